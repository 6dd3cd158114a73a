# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Result reporting.

The result of a branch run is a "web transaction": a JSON document with the
run data (web-txn.data) plus a tarball of the stage logs (runlogs.tgz), both
in the run log directory. The upload itself is delegated to the external
upload_command, called with that directory as its only argument.
"""

from __future__ import absolute_import
import json
import logging
import os
import shlex
import tarfile
import time

from buildfarm_client.common.errors import StageFailure
from buildfarm_client.common.utils import run_log

log = logging.getLogger(__name__)

OK = "OK"
TXN_DATA = "web-txn.data"
TXN_LOGS = "runlogs.tgz"

# Synchronization failures reported to nobody but the local log.
SCM_ONLY_STAGES = ("CVS", "CVS-status")


def config_summary(conf):
    """ The registered configuration items, for the collector. """
    return dict((name, getattr(conf, name, None)) for name in sorted(conf._defaults))


def format_files(pairs):
    return "!".join("%s %s" % (path, rev) if rev else path for path, rev in pairs)


class ResultSender(object):
    """
    Hands the outcome of a branch run over to the collector.

    Example usage:
        sender = ResultSender(conf, "HEAD", state, logs)
        sender.changes = changeset
        sender.send_result("OK")            # returns
        sender.send_result("Make", 2, lines)  # raises StageFailure
    """

    def __init__(self, conf, branch, state, logs):
        """
        :param conf: instance of buildfarm_client.common.config.Config
        :param str branch: the branch that ran
        :param state: BranchState of the branch
        :param logs: BranchRunLogs of the run
        """
        self.conf = conf
        self.branch = branch
        self.state = state
        self.logs = logs
        self.current_snap = None
        self.changed_files = []
        self.changed_since_success = []
        self.from_source = False

    def set_changes(self, current_snap, changed_files, changed_since_success):
        self.current_snap = current_snap
        self.changed_files = list(changed_files)
        self.changed_since_success = list(changed_since_success)

    def build_data(self, stage, status, lines, ts=None, before_logs=False):
        if self.current_snap and not self.from_source:
            lines = [
                "Last file mtime in snapshot: %s GMT\n" % time.asctime(time.gmtime(self.current_snap)),
                "===================================================\n",
            ] + list(lines)
        confsum = ""
        if stage == OK or not (before_logs or "CVS" in stage):
            confsum = config_summary(self.conf)
        return {
            "changed_this_run": format_files(self.changed_files),
            "changed_since_success": (format_files(self.changed_since_success)
                                      if stage != OK else ""),
            "branch": self.branch,
            "status": status,
            "stage": stage,
            "animal": self.conf.animal,
            "ts": int(ts or time.time()),
            "log_data": "".join(lines),
            "confsum": confsum,
            "target": self.conf.target,
            "verbose": self.conf.verbose,
        }

    def write_txn(self, data):
        self.logs.ensure()
        with open(os.path.join(self.logs.path, TXN_DATA), "w") as f:
            json.dump(data, f, indent=1, sort_keys=True)

    def bundle_logs(self):
        """ Packs the stage logs, oldest first, into runlogs.tgz. """
        path = os.path.join(self.logs.path, TXN_LOGS)
        with tarfile.open(path, "w:gz") as tar:
            for name in self.logs.logfiles():
                tar.add(os.path.join(self.logs.path, name), arcname=name)
        return path

    def upload(self):
        if not self.conf.upload_command:
            log.error("No upload_command configured, can not send results")
            raise StageFailure("Upload", 1)
        cmd = shlex.split(self.conf.upload_command) + [self.logs.path]
        status, lines = run_log(cmd)
        if status:
            log.error("Web txn failed with status: %s" % status)
            raise StageFailure("Upload", status, lines)

    def _record_success(self):
        if not self.conf.nostatus and self.current_snap:
            self.state.set_last("success.snap", self.current_snap)

    def send_result(self, stage, status=0, lines=None, before_logs=False):
        """ Reports the outcome of the run.

        Returns only for a successful run; any other stage, and any failure
        to send, raises StageFailure.

        :param str stage: "OK" or the name of the failed stage
        :param int status: exit status of the failed stage
        :param list lines: log lines of the failed stage
        :param bool before_logs: the run failed before its log directory was
            set up, whatever is there belongs to an earlier run
        :raises: StageFailure
        """
        lines = lines or []
        if self.conf.verbose > 1:
            log.info("======== log passed to send_result ===========\n%s" % "".join(lines))
        self.write_txn(self.build_data(stage, status, lines, before_logs=before_logs))

        if self.conf.nosend or stage in SCM_ONLY_STAGES:
            log.info("Branch: %s" % self.branch)
            if stage == OK:
                log.info("All stages succeeded")
                self._record_success()
                return
            log.error("Stage %s failed with status %s" % (stage, status))
            raise StageFailure(stage, status, lines)

        if not before_logs:
            self.bundle_logs()
        else:
            # left over from an earlier run
            path = os.path.join(self.logs.path, TXN_LOGS)
            if os.path.exists(path):
                os.unlink(path)

        self.upload()

        if stage != OK:
            log.error("Buildfarm member %s failed on %s stage %s"
                      % (self.conf.animal, self.branch, stage))
            raise StageFailure(stage, status, lines)
        self._record_success()
