# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import json
import os
import shutil
import tarfile
import tempfile

import pytest

from buildfarm_client import report
from buildfarm_client.common.errors import StageFailure
from buildfarm_client.common.logger import BranchRunLogs
from buildfarm_client.state import BranchState
from tests import T0, make_conf


class TestResultSender:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()
        os.makedirs(os.path.join(self.tmpdir, "HEAD"))

    def teardown_method(self, test_method):
        shutil.rmtree(self.tmpdir)

    def sender(self, **items):
        conf = make_conf(self.tmpdir, **items)
        state = BranchState(conf, "HEAD")
        logs = BranchRunLogs(state.root, conf.animal)
        sender = report.ResultSender(conf, "HEAD", state, logs)
        sender.set_changes(T0 + 2600, [("a", "abc"), ("b", "abd")], [("c", "abe")])
        return sender

    def read_txn(self, sender):
        with open(os.path.join(sender.logs.path, report.TXN_DATA)) as f:
            return json.load(f)

    def test_format_files(self):
        assert report.format_files([("a.c", "1.2"), ("b.c", None)]) == "a.c 1.2!b.c"
        assert report.format_files([]) == ""

    def test_build_data(self):
        sender = self.sender(target="https://example.org/cgi-bin/pgstatus.pl")
        data = sender.build_data("Make", 2, ["error\n"], ts=T0 + 3000)
        assert data["changed_this_run"] == "a abc!b abd"
        assert data["changed_since_success"] == "c abe"
        assert data["stage"] == "Make"
        assert data["status"] == 2
        assert data["ts"] == T0 + 3000
        assert data["animal"] == "testanimal"
        assert data["log_data"].startswith("Last file mtime in snapshot: ")
        assert data["log_data"].endswith("error\n")
        assert data["confsum"]["scm"] == "git"

    def test_ok_has_no_since_success_list(self):
        data = self.sender().build_data(report.OK, 0, [])
        assert data["changed_since_success"] == ""

    def test_cvs_failures_carry_no_config(self):
        data = self.sender().build_data("CVS-Dirty", 1, [])
        assert data["confsum"] == ""

    def test_nosend_ok_records_success(self):
        sender = self.sender()
        sender.send_result(report.OK)
        assert sender.state.last_success_snap == T0 + 2600
        assert self.read_txn(sender)["stage"] == report.OK

    def test_nostatus_records_nothing(self):
        sender = self.sender(nostatus=True)
        sender.send_result(report.OK)
        assert sender.state.last_success_snap is None

    def test_nosend_failure_raises(self):
        sender = self.sender()
        with pytest.raises(StageFailure) as excinfo:
            sender.send_result("Check", 2, ["regression diffs\n"])
        assert excinfo.value.stage == "Check"
        assert excinfo.value.status == 2
        assert sender.state.last_success_snap is None

    def test_upload(self):
        sender = self.sender(nosend=False, upload_command="true --quiet")
        sender.logs.writelog("configure", ["ok\n"])
        sender.logs.writelog("build", ["ok\n"])
        sender.send_result(report.OK)
        with tarfile.open(os.path.join(sender.logs.path, report.TXN_LOGS)) as tar:
            assert sorted(tar.getnames()) == ["build.log", "configure.log"]
        assert sender.state.last_success_snap == T0 + 2600

    def test_upload_after_failure_still_raises(self):
        sender = self.sender(nosend=False, upload_command="true")
        with pytest.raises(StageFailure) as excinfo:
            sender.send_result("Make", 2, [])
        assert excinfo.value.stage == "Make"

    def test_upload_failure(self):
        sender = self.sender(nosend=False, upload_command="false")
        with pytest.raises(StageFailure) as excinfo:
            sender.send_result(report.OK)
        assert excinfo.value.stage == "Upload"
        assert sender.state.last_success_snap is None

    def test_no_upload_command(self):
        sender = self.sender(nosend=False)
        with pytest.raises(StageFailure) as excinfo:
            sender.send_result(report.OK)
        assert excinfo.value.stage == "Upload"

    def test_scm_only_stage_is_not_uploaded(self):
        sender = self.sender(nosend=False, upload_command="false")
        with pytest.raises(StageFailure) as excinfo:
            sender.send_result("CVS", 1, ["cvs [checkout aborted]\n"])
        assert excinfo.value.stage == "CVS"

    def test_cvs_failure_drops_stale_log_bundle(self):
        sender = self.sender(nosend=False, upload_command="true")
        sender.logs.ensure()
        stale = os.path.join(sender.logs.path, report.TXN_LOGS)
        open(stale, "w").close()
        with pytest.raises(StageFailure):
            sender.send_result("CVS-Merge", 1, [], before_logs=True)
        assert not os.path.exists(stale)

    def test_sync_failure_does_not_bundle_old_logs(self):
        sender = self.sender(nosend=False, upload_command="true")
        sender.logs.writelog("SCM-checkout", ["from the last run\n"])
        sender.bundle_logs()
        with pytest.raises(StageFailure) as excinfo:
            sender.send_result("Git-Dirty", 99, [" M README\n"], before_logs=True)
        assert excinfo.value.stage == "Git-Dirty"
        assert not os.path.exists(os.path.join(sender.logs.path, report.TXN_LOGS))
        assert self.read_txn(sender)["confsum"] == ""
