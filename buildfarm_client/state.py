# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Persisted per-branch state.

Everything the client remembers between invocations is kept in small plain
text files in the branch root, prefixed with the animal name:

    <animal>.last.status        time of the last run that did work
    <animal>.last.run.snap      snapshot time of the last run
    <animal>.last.success.snap  snapshot time of the last successful run
    <animal>.last.stage         last pipeline stage reached
    <animal>.force-one-run      marker forcing the next run, removed on use
    githead.log                 head revision of the last checkout
"""

from __future__ import absolute_import
import logging
import os
import time

from buildfarm_client.common.utils import read_line, read_timestamp, write_line

log = logging.getLogger(__name__)

HEAD_REVISION_FILE = "githead.log"


def branch_root(conf, branch):
    return os.path.join(conf.build_root, branch)


class BranchState(object):
    """The durable state of one branch on this animal."""

    def __init__(self, conf, branch, root=None):
        self.conf = conf
        self.branch = branch
        self.root = root or branch_root(conf, branch)
        self.prefix = "%s." % conf.animal

    def __repr__(self):
        return "<BranchState %s in %s>" % (self.branch, self.root)

    def _path(self, name):
        return os.path.join(self.root, self.prefix + name)

    def find_last(self, which):
        """ Returns the timestamp recorded in "last.<which>", or None. """
        return read_timestamp(self._path("last.%s" % which))

    def set_last(self, which, value=None):
        if value is None:
            value = int(time.time())
        write_line(self._path("last.%s" % which), int(value))

    @property
    def last_status(self):
        return self.find_last("status") or 0

    @property
    def last_run_snap(self):
        return self.find_last("run.snap")

    @property
    def last_success_snap(self):
        return self.find_last("success.snap")

    @property
    def last_stage(self):
        return read_line(self._path("last.stage"))

    def set_last_stage(self, stage):
        write_line(self._path("last.stage"), stage)

    @property
    def head_revision(self):
        """ The head revision recorded by the last checkout, or None. """
        return read_line(os.path.join(self.root, HEAD_REVISION_FILE))

    def set_head_revision(self, revision):
        write_line(os.path.join(self.root, HEAD_REVISION_FILE), revision)

    def force_marker_exists(self):
        return os.path.exists(self._path("force-one-run"))

    def consume_force_marker(self):
        """ Returns True if a forced run was requested, removing the request. """
        path = self._path("force-one-run")
        if not os.path.exists(path):
            return False
        log.info("Found %s, forcing a run of %s" % (path, self.branch))
        os.unlink(path)
        return True

    def request_forced_run(self):
        write_line(self._path("force-one-run"), int(time.time()))
