# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

from __future__ import absolute_import

from buildfarm_client.scheduler.build import BuildRun  # noqa
from buildfarm_client.scheduler.runner import MODES, Runner  # noqa
from buildfarm_client.scheduler.selection import select_branches  # noqa
