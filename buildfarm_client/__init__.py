# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""The build farm client.

The client keeps a set of source branches checked out on a build host and
drives them through a fixed build/test pipeline, reporting the outcome to a
central collector. It is responsible for a number of tasks:

- Keeping per-branch working copies in sync with the upstream repository,
  optionally sharing storage through a local mirror and linked work-trees.
- Working out which files changed since the last run and since the last
  successful run, and whether a build is needed at all.
- Deciding which branches run, making sure only one process works on a
  branch at a time, and bounding how many branches build in parallel.
- Dispatching the pipeline stages to the configured step modules.
"""

from __future__ import absolute_import

from importlib import metadata

try:
    version = metadata.version("buildfarm-client")
except metadata.PackageNotFoundError:
    version = "unknown"
