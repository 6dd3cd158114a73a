# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import logging
import os
import shutil
import tempfile
import time

import mock

from buildfarm_client.common import utils
from buildfarm_client.common.logger import BranchRunLogs
from buildfarm_client.state import BranchState, branch_root
from tests import make_conf


class TestBranchState:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()
        self.conf = make_conf(self.tmpdir)
        os.makedirs(branch_root(self.conf, "HEAD"))
        self.state = BranchState(self.conf, "HEAD")

    def teardown_method(self, test_method):
        shutil.rmtree(self.tmpdir)

    def test_fresh_branch(self):
        assert self.state.last_status == 0
        assert self.state.last_run_snap is None
        assert self.state.last_success_snap is None
        assert self.state.last_stage is None
        assert self.state.head_revision is None

    def test_files_are_per_animal(self):
        self.state.set_last("run.snap", 1234)
        path = os.path.join(self.tmpdir, "HEAD", "testanimal.last.run.snap")
        with open(path) as f:
            assert f.read() == "1234\n"
        assert self.state.last_run_snap == 1234
        other = BranchState(make_conf(self.tmpdir, animal="kestrel"), "HEAD")
        assert other.last_run_snap is None

    def test_set_last_defaults_to_now(self):
        before = int(time.time())
        self.state.set_last("status")
        assert before <= self.state.last_status <= int(time.time())

    def test_garbage_is_ignored(self):
        with open(os.path.join(self.tmpdir, "HEAD", "testanimal.last.status"), "w") as f:
            f.write("yesterday\n")
        assert self.state.last_status == 0

    def test_stage_and_head(self):
        self.state.set_last_stage("check")
        self.state.set_head_revision("abc123")
        assert self.state.last_stage == "check"
        assert self.state.head_revision == "abc123"
        assert os.path.exists(os.path.join(self.tmpdir, "HEAD", "githead.log"))

    def test_force_marker(self):
        assert not self.state.consume_force_marker()
        self.state.request_forced_run()
        assert self.state.force_marker_exists()
        assert self.state.consume_force_marker()
        assert not self.state.force_marker_exists()
        assert not self.state.consume_force_marker()


class TestBranchRunLogs:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()
        self.logs = BranchRunLogs(self.tmpdir, "testanimal")

    def teardown_method(self, test_method):
        self.logs.stop()
        shutil.rmtree(self.tmpdir)

    def test_writelog(self):
        self.logs.writelog("configure", ["checking for gcc... gcc\n", "no newline"])
        path = os.path.join(self.tmpdir, "testanimal.lastrun-logs", "configure.log")
        with open(path) as f:
            assert f.read() == "checking for gcc... gcc\nno newline\n"

    def test_clean(self):
        self.logs.writelog("build", ["old\n"])
        self.logs.clean()
        assert os.listdir(self.logs.path) == []

    def test_logfiles_in_write_order(self):
        self.logs.writelog("check", [])
        self.logs.writelog("build", [])
        os.utime(os.path.join(self.logs.path, "build.log"), (1000, 1000))
        os.utime(os.path.join(self.logs.path, "check.log"), (2000, 2000))
        assert self.logs.logfiles() == ["build.log", "check.log"]

    def test_captures_process_log(self):
        self.logs.start()
        logging.getLogger("buildfarm_client.test").warning("captured line")
        self.logs.stop()
        logging.getLogger("buildfarm_client.test").warning("not captured")
        with open(os.path.join(self.logs.path, "run.log")) as f:
            content = f.read()
        assert "captured line" in content
        assert "not captured" not in content


class TestUtils:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()

    def teardown_method(self, test_method):
        shutil.rmtree(self.tmpdir)

    def test_run_log(self):
        status, lines = utils.run_log("echo out; echo err >&2; exit 3", shell=True,
                                      cwd=self.tmpdir, env={"BF_TEST": "x"})
        assert status == 3
        assert sorted(lines) == ["err\n", "out\n"]

    def test_run_log_missing_command(self):
        status, lines = utils.run_log(["/nonexistent/command"])
        assert status == 127
        assert lines

    def test_write_line_replaces(self):
        path = os.path.join(self.tmpdir, "value")
        utils.write_line(path, 1)
        utils.write_line(path, "two")
        assert utils.read_line(path) == "two"
        assert os.listdir(self.tmpdir) == ["value"]
        assert utils.read_timestamp(path) is None
        assert utils.read_timestamp(os.path.join(self.tmpdir, "missing")) is None

    def test_watchdog(self):
        assert utils.spawn_watchdog(0) is None
        with mock.patch("os.killpg") as killpg:
            timer = utils.spawn_watchdog(0.01)
            timer.join(5)
        assert killpg.called

    def test_watchdog_cancelled(self):
        with mock.patch("os.killpg") as killpg:
            timer = utils.spawn_watchdog(60)
            timer.cancel()
            timer.join(5)
        assert not killpg.called
