# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

from __future__ import absolute_import

from buildfarm_client.pipeline.hooks import HookRegistry  # noqa
from buildfarm_client.pipeline.module import (  # noqa
    StepModule, load_module_class, parallel_unsafe_modules, setup_modules)
from buildfarm_client.pipeline.stages import (  # noqa
    STAGES, LOCALE_STAGES, NeedRun, method_name, step_wanted)
