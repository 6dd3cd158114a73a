# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Running several branches.

Every branch runs in its own run-build child process; nothing but the
files in the lock directory and the branch roots is shared between them.
"""

from __future__ import absolute_import
import logging
import subprocess as sp
import sys
import time

from buildfarm_client.locks import count_running, parallel_lock, running_lock
from buildfarm_client.pipeline import parallel_unsafe_modules
from buildfarm_client.state import BranchState

log = logging.getLogger(__name__)

RUN_ALL = "run-all"
RUN_ONE = "run-one"
RUN_PARALLEL = "run-parallel"
MODES = (RUN_ALL, RUN_ONE, RUN_PARALLEL)

# Minimum delay between two launches, so that siblings do not take
# their snapshots in the same second.
MIN_LAUNCH_DELAY = 2
POLL_INTERVAL = 1


class Runner(object):
    """
    Drives the run-build children for a list of branches.

    :param conf: instance of buildfarm_client.common.config.Config
    :param list options: command line options forwarded to every child
    """

    def __init__(self, conf, options=None):
        self.conf = conf
        self.options = list(options or [])
        self.children = []

    def child_command(self, branch):
        return [sys.executable, "-m", "buildfarm_client"] + self.options + ["run-build", branch]

    def spawn(self, branch, pass_fds=()):
        cmd = self.child_command(branch)
        log.info("Starting run of %s" % branch)
        log.debug("Running %r" % cmd)
        return sp.Popen(cmd, pass_fds=pass_fds)

    def run_branch(self, branch):
        status = self.spawn(branch).wait()
        if status:
            log.warning("Run of %s exited with status %s" % (branch, status))
        return status

    def run(self, mode, branches):
        if mode == RUN_ALL:
            return self.run_all(branches)
        elif mode == RUN_ONE:
            return self.run_one(branches)
        elif mode == RUN_PARALLEL:
            return self.run_parallel(branches)
        raise ValueError("Unknown run mode %r" % mode)

    def run_all(self, branches):
        for branch in branches:
            self.run_branch(branch)

    def last_status(self, branch):
        return BranchState(self.conf, branch).last_status

    def run_one(self, branches):
        """ Runs the stalest branch that has work to do, and only that one.

        Branches are tried oldest last status first; the first branch whose
        status changed did some work and ends the round.

        :returns: the branch that did work, or None
        """
        before = dict((branch, self.last_status(branch)) for branch in branches)
        for branch in sorted(branches, key=lambda b: before[b]):
            self.run_branch(branch)
            if self.last_status(branch) != before[branch]:
                return branch
        return None

    def run_parallel(self, branches):
        """ Runs the branches concurrently, at most max_parallel at a time.

        The number of running branches is the number of live running locks.
        A running lock is created by us while we hold the parallel lock, and
        handed over to the child, which keeps it locked until it exits.
        """
        unsafe = parallel_unsafe_modules(self.conf)
        if unsafe:
            log.warning("Modules %s are not parallel safe, running branches one by one"
                        % ", ".join(unsafe))
            return self.run_all(branches)
        if self.conf.max_parallel < 1:
            return self.run_all(branches)

        queue = list(branches)
        plock = parallel_lock(self.conf)
        while queue:
            branch = queue[0]
            spawned = slot = False
            plock.acquire()
            try:
                if count_running(self.conf.lock_dir) < self.conf.max_parallel:
                    slot = True
                    queue.pop(0)
                    spawned = self._spawn_with_running_lock(branch)
            finally:
                plock.release()
            if spawned:
                self.stagger()
            elif not slot:
                self.wait_for_slot()
        self.wait_all()

    def _spawn_with_running_lock(self, branch):
        rlock = running_lock(self.conf, branch)
        if not rlock.acquire():
            log.info("%s is already running, skipping it" % branch)
            return False
        try:
            self.children.append((branch, self.spawn(branch, pass_fds=(rlock.fileno(),))))
        finally:
            # The child holds the lock from now on.
            rlock.detach()
        return True

    def reap(self):
        """ Forgets the children that exited; returns how many did. """
        running = []
        for branch, child in self.children:
            status = child.poll()
            if status is None:
                running.append((branch, child))
            elif status:
                log.warning("Run of %s exited with status %s" % (branch, status))
        exited = len(self.children) - len(running)
        self.children = running
        return exited

    def stagger(self):
        time.sleep(MIN_LAUNCH_DELAY)
        for _ in range(self.conf.stagger_seconds):
            if self.reap():
                break
            time.sleep(POLL_INTERVAL)

    def wait_for_slot(self):
        while self.children and not self.reap():
            time.sleep(POLL_INTERVAL)
        if not self.children:
            # the slots are held by somebody else
            time.sleep(POLL_INTERVAL)

    def wait_all(self):
        for branch, child in self.children:
            status = child.wait()
            if status:
                log.warning("Run of %s exited with status %s" % (branch, status))
        self.children = []
