# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""The run of one branch.

A branch run owns the branch lock from start to end. It brings the working
copy up to date, decides from the changes whether a build is needed, copies
the sources to a scratch build directory and drives the step modules through
the stages. Whatever happens, the scratch directory is removed afterwards
(or kept under a timestamped name for failed runs with keep_error_builds).
"""

from __future__ import absolute_import
import logging
import os
import re
import shutil
import signal
import threading
import time

from buildfarm_client.common.errors import (
    BuildFarmError, CoordinationError, Interrupted, RunSkipped, StageFailure, SyncFailure)
from buildfarm_client.common.logger import BranchRunLogs
from buildfarm_client.common.utils import spawn_watchdog
from buildfarm_client.locks import LockBusy, branch_lock
from buildfarm_client.pipeline import (
    HookRegistry, NeedRun, setup_modules, step_wanted)
from buildfarm_client.pipeline import stages
from buildfarm_client.report import OK, ResultSender
from buildfarm_client.scm import SCM
from buildfarm_client.state import BranchState, branch_root

log = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)

# Status reported for synchronization failures, which have no exit status.
SYNC_FAILURE_STATUS = 99


def filter_trigger_files(conf, files):
    """ Drops the changed files that should not trigger a run.

    Files matching trigger_exclude are dropped; when trigger_include is set,
    only files matching it are kept.
    """
    if conf.trigger_exclude:
        exclude = re.compile(conf.trigger_exclude)
        files = [f for f in files if not exclude.search(f)]
    if conf.trigger_include:
        include = re.compile(conf.trigger_include)
        files = [f for f in files if include.search(f)]
    return files


class BuildRun(object):
    """
    One run of the pipeline for one branch.

    Example usage:
        try:
            BuildRun(conf, "REL_16_STABLE").run()
        except RunSkipped:
            ...  # locked elsewhere, or nothing to do
        except StageFailure:
            ...  # reported, exit non-zero
    """

    def __init__(self, conf, branch, forcerun=False, now=None):
        self.conf = conf
        self.branch = branch
        self.forcerun = forcerun or conf.forcerun or branch in conf.force_branches
        self.now = int(now or time.time())
        self.root = branch_root(conf, branch)
        self.state = BranchState(conf, branch, root=self.root)
        self.logs = BranchRunLogs(self.root, conf.animal)
        self.sender = ResultSender(conf, branch, self.state, self.logs)
        self.install_dir = os.path.join(self.root, "inst")
        self.registry = HookRegistry()
        self.modules = []
        self.scm = None
        self.build_dir = None
        self.lock = None
        self.started = False
        self.synced = False
        self.succeeded = False
        self._old_handlers = {}

    def __repr__(self):
        return "<BuildRun %s>" % self.branch

    def run(self):
        """ Runs the branch.

        :raises: RunSkipped when the branch is locked elsewhere or nothing
            changed, StageFailure when the run failed and was reported
        """
        if not os.path.isdir(self.conf.build_root):
            raise CoordinationError("%s does not exist or is not a directory"
                                    % self.conf.build_root)
        if not os.path.isdir(self.root):
            os.makedirs(self.root)

        self.lock = branch_lock(self.root)
        if not self.lock.acquire():
            raise LockBusy("Another process is building %s" % self.branch)
        try:
            self._install_signal_handlers()
            self._run_locked()
        except Interrupted:
            log.error("Run of %s interrupted" % self.branch)
            self._abort_modules()
            raise
        finally:
            self._finish()

    def _run_locked(self):
        log.info("Buildfarm run for %s:%s starting" % (self.conf.animal, self.branch))
        os.environ.update(dict((k, str(v)) for k, v in self.conf.build_env.items()))

        self.scm = SCM(self.conf, self.root, self.branch)
        self.scm.check_access()
        self.build_dir = self.scm.get_build_path()
        if os.path.isdir(self.install_dir):
            raise CoordinationError("%s has a leftover inst directory" % self.root)

        if self.state.consume_force_marker():
            self.forcerun = True

        self.modules = setup_modules(self.conf, self.registry, self.root, self.branch,
                                     self.build_dir)

        scmlog = self.checkout()
        changes = self.find_changes()
        self.logs.clean()
        self.logs.start()
        self.logs.writelog("SCM-checkout", scmlog)

        self.started = True
        if self.scm.copy_source_required():
            log.info("Copying source to %s" % self.build_dir)
            self.scm.copy_source(self.build_dir)

        if not self.conf.nostatus:
            self.state.set_last("status", self.now)
            self.state.set_last("run.snap", changes.current_snap)

        self.drive()
        self.sender.send_result(OK)
        self.succeeded = True

    def checkout(self):
        """ Synchronizes the working copy, under the watchdog when configured. """
        log.info("Checking out source of %s" % self.branch)
        watchdog = spawn_watchdog(self.conf.scm_timeout_secs)
        try:
            scmlog, head = self.scm.checkout()
            self.synced = True
            self.registry.dispatch(stages.CHECKOUT, scmlog)
        except SyncFailure as e:
            log.error("Synchronization of %s failed: %s" % (self.branch, e))
            self._abort_modules()
            self.sender.send_result(e.stage, SYNC_FAILURE_STATUS, e.log, before_logs=True)
        except StageFailure as e:
            self._abort_modules()
            self.sender.send_result(e.stage, e.status, e.log, before_logs=True)
        finally:
            if watchdog:
                watchdog.cancel()
        if head:
            log.debug("%s head is %s" % (self.branch, head))
        return scmlog

    def find_changes(self):
        """ Classifies the changes and decides whether the run goes on.

        :returns: ChangeSet
        :raises: RunSkipped when no build is needed
        """
        log.info("Checking if build run needed")
        last_status = self.state.last_status
        last_run_snap = self.state.last_run_snap
        last_success_snap = self.state.last_success_snap

        forced = self.forcerun or last_run_snap is None
        heartbeat = self.conf.force_every_for(self.branch)
        if last_status and heartbeat and last_status + float(heartbeat) * 3600 < self.now:
            log.info("No run of %s for %s hours, forcing one" % (self.branch, heartbeat))
            forced = True
        if forced:
            last_status = 0

        changes = self.scm.find_changed(last_run_snap, last_success_snap)
        filtered = filter_trigger_files(self.conf, changes.files)

        decision = NeedRun(needed=not last_status or bool(filtered))
        try:
            self.registry.dispatch(stages.NEED_RUN, decision)
        except StageFailure as e:
            self._abort_modules()
            self.sender.send_result(e.stage, e.status, e.log, before_logs=True)

        if not decision.needed:
            log.info("No build required: last status = %s GMT, current snapshot = %s GMT, "
                     "changed files = %d"
                     % (time.asctime(time.gmtime(last_status)),
                        time.asctime(time.gmtime(changes.current_snap)), len(filtered)))
            raise RunSkipped("%s is up to date" % self.branch)

        self.sender.set_changes(changes.current_snap,
                                self.scm.get_versions(changes.files),
                                self.scm.get_versions(changes.files_since_success))
        return changes

    def run_stage(self, stage, *args):
        if not step_wanted(self.conf, stage):
            log.info("Skipping %s" % stage)
            return
        if not self.conf.nostatus:
            self.state.set_last_stage(stage)
        log.info("Running %s%s" % (stage, " %s" % args[0] if args else ""))
        try:
            self.registry.dispatch(stage, *args)
        except BuildFarmError:
            raise
        except Exception as e:
            log.exception("Hook of stage %s crashed" % stage)
            raise StageFailure(stage, 1, ["%s\n" % e])

    def drive(self):
        """ Runs the stages after the need-run decision, stopping at the first failure. """
        try:
            self.run_stage(stages.SETUP_TARGET)
            for stage in (stages.CONFIGURE, stages.BUILD, stages.CHECK, stages.INSTALL):
                self.run_stage(stage)
            for locale in self.conf.locales:
                for stage in stages.LOCALE_STAGES:
                    self.run_stage(stage, locale)
            self.run_stage(stages.CLEANUP)
        except StageFailure as e:
            self._abort_modules()
            self.sender.send_result(e.stage, e.status, e.log)

    def _abort_modules(self):
        for module in self.registry.owners():
            try:
                module.on_abort()
            except Exception:
                log.exception("Abort handler of %r failed" % module)

    def _interrupt(self, signum, frame):
        raise Interrupted(signum)

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in HANDLED_SIGNALS:
            self._old_handlers[signum] = signal.signal(signum, self._interrupt)

    def _restore_signal_handlers(self):
        for signum, handler in self._old_handlers.items():
            signal.signal(signum, handler)
        self._old_handlers = {}

    def remove_build_tree(self):
        """ Removes the scratch build and install directories, or keeps them. """
        if not self.started:
            # nothing of ours there, a leftover inst directory is for a human to look at
            return
        failed = not self.succeeded
        keep = failed and self.conf.keep_error_builds
        timestr = time.strftime("%Y-%m-%d_%H-%M-%S", time.localtime(self.now))
        for path, prefix in ((self.build_dir, self.conf.source_dir), (self.install_dir, "inst")):
            if not path or not os.path.isdir(path):
                continue
            if keep:
                kept = os.path.join(self.root, "%skeep.%s" % (prefix, timestr))
                log.info("Keeping %s as %s" % (path, kept))
                os.rename(path, kept)
            elif not failed or not self.conf.keepall:
                shutil.rmtree(path)

    def _finish(self):
        try:
            self.remove_build_tree()
            if self.synced:
                # a working copy that failed to sync stays as it is
                self.scm.cleanup()
                if self.conf.git_rm_worktrees:
                    self.scm.rm_worktree()
        finally:
            self.logs.stop()
            self._restore_signal_handlers()
            self.lock.release()
