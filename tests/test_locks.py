# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import os
import shutil
import subprocess as sp
import sys
import tempfile

import pytest

from buildfarm_client import locks
from buildfarm_client.common.errors import CoordinationError, RunSkipped
from tests import make_conf


class TestFileLock:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "builder.LCK")

    def teardown_method(self, test_method):
        shutil.rmtree(self.tmpdir)

    def test_exclusive(self):
        first = locks.FileLock(self.path)
        second = locks.FileLock(self.path)
        assert first.acquire()
        assert first.locked
        assert not second.acquire()
        assert not second.locked
        first.release()
        assert second.acquire()
        second.release()

    def test_acquire_twice(self):
        lock = locks.FileLock(self.path)
        assert lock.acquire()
        assert lock.acquire()
        lock.release()
        lock.release()
        assert not lock.locked

    def test_context_manager(self):
        with locks.FileLock(self.path) as lock:
            assert lock.locked
            with pytest.raises(locks.LockBusy):
                with locks.FileLock(self.path):
                    pass
        assert not lock.locked

    def test_busy_lock_is_a_skip(self):
        assert issubclass(locks.LockBusy, RunSkipped)

    def test_unusable_directory(self):
        lock = locks.FileLock(os.path.join(self.tmpdir, "missing", "x.LCK"))
        with pytest.raises(CoordinationError):
            lock.acquire()

    def test_held_by_child_after_detach(self):
        lock = locks.FileLock(self.path)
        assert lock.acquire()
        child = sp.Popen([sys.executable, "-c", "import sys; sys.stdin.read()"],
                         stdin=sp.PIPE, pass_fds=(lock.fileno(),))
        try:
            lock.detach()
            assert not lock.locked
            assert not locks.FileLock(self.path).acquire()
        finally:
            child.communicate()
        assert locks.FileLock(self.path).acquire()


class TestLockFactories:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()
        self.conf = make_conf(self.tmpdir)

    def teardown_method(self, test_method):
        shutil.rmtree(self.tmpdir)

    def test_paths(self):
        assert locks.global_lock(self.conf).path == os.path.join(self.tmpdir, "GLOBAL.lck")
        assert locks.parallel_lock(self.conf).blocking
        assert locks.branch_lock("/build/HEAD").path == "/build/HEAD/builder.LCK"
        assert locks.setup_lock("/build/HEAD/source/").path == "/build/HEAD/source.setup.LCK"
        assert locks.resource_lock(self.conf, "db").path == os.path.join(
            self.tmpdir, "db.resource.LCK")
        assert locks.running_lock(self.conf, "HEAD").path == os.path.join(
            self.tmpdir, "testanimal.HEAD.running.LCK")

    def test_global_lock_dir(self):
        lock_dir = os.path.join(self.tmpdir, "locks")
        os.makedirs(lock_dir)
        self.conf.set_item("global_lock_dir", lock_dir)
        assert locks.global_lock(self.conf).path == os.path.join(lock_dir, "GLOBAL.lck")

    def test_missing_lock_dir(self):
        self.conf.set_item("global_lock_dir", os.path.join(self.tmpdir, "nope"))
        with pytest.raises(CoordinationError):
            locks.global_lock(self.conf)

    def test_count_running(self):
        live = locks.running_lock(self.conf, "HEAD")
        assert live.acquire()
        stale = locks.running_lock(self.conf, "REL_16_STABLE")
        open(stale.path, "w").close()
        try:
            assert locks.count_running(self.tmpdir) == 1
            assert os.path.exists(live.path)
            assert not os.path.exists(stale.path)
        finally:
            live.release()
        assert locks.count_running(self.tmpdir) == 0
