# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Defines custom exceptions """

from __future__ import absolute_import


class BuildFarmError(RuntimeError):
    pass


class ConfigError(ValueError):
    pass


class CoordinationError(BuildFarmError):
    """Raised when the lock infrastructure itself is unusable."""


class RunSkipped(Exception):
    """Raise when a run has nothing to do; this is never a failure."""


class SyncFailure(BuildFarmError):
    """The working copy could not be brought up to date.

    :param str stage: the name the failure is reported under, e.g. Git-Dirty
    :param list log: the log lines collected up to the failure
    """

    def __init__(self, stage, message, log=None):
        super(SyncFailure, self).__init__(message)
        self.stage = stage
        self.log = list(log or [])


class MissingBranch(SyncFailure):
    """The local tracking branch is not checked out in the working copy."""

    def __init__(self, branch, message, log=None):
        super(MissingBranch, self).__init__("Git", message, log)
        self.branch = branch


class StageFailure(BuildFarmError):
    """A pipeline stage failed and the branch run is over."""

    def __init__(self, stage, status, log=None):
        super(StageFailure, self).__init__(
            "Stage %s failed with status %s" % (stage, status))
        self.stage = stage
        self.status = status
        self.log = list(log or [])


class Interrupted(BuildFarmError):
    """The run received a terminating signal."""

    def __init__(self, signum):
        super(Interrupted, self).__init__("Exiting on signal %s" % signum)
        self.signum = signum
