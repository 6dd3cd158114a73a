# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import os
import shutil
import tempfile

import mock
import pytest

from buildfarm_client.common.errors import ConfigError, StageFailure
from buildfarm_client.modules.commands import Commands
from buildfarm_client.modules.skeleton import Skeleton
from buildfarm_client.pipeline import (
    STAGES, HookRegistry, NeedRun, load_module_class, method_name,
    parallel_unsafe_modules, setup_modules, step_wanted)
from tests import fake_modules, make_conf


class TestStages:

    def test_order(self):
        assert STAGES == ("checkout", "need-run", "setup-target", "configure", "build",
                          "check", "install", "installcheck", "locale-end", "cleanup")

    def test_method_name(self):
        assert method_name("setup-target") == "setup_target"
        assert method_name("build") == "build"
        with pytest.raises(ValueError):
            method_name("deploy")

    def test_step_wanted(self):
        conf = make_conf("/build", skip_steps=["check"])
        assert step_wanted(conf, "build")
        assert not step_wanted(conf, "check")
        conf.set_item("only_steps", ["check", "install"])
        assert step_wanted(conf, "check")
        assert not step_wanted(conf, "build")

    def test_need_run(self):
        decision = NeedRun()
        assert not decision.needed
        decision.request("docs changed")
        assert decision.needed
        assert decision.reasons == ["docs changed"]


class TestHookRegistry:

    def test_dispatch_in_registration_order(self):
        registry = HookRegistry()
        seen = []
        registry.register("build", lambda: seen.append("h1"), "m1")
        registry.register("build", lambda: seen.append("h2"), "m2")
        registry.register("check", lambda: seen.append("c1"), "m1")
        registry.dispatch("build")
        assert seen == ["h1", "h2"]

    def test_fail_fast(self):
        registry = HookRegistry()
        seen = []

        def failing():
            seen.append("h2")
            raise StageFailure("build", 2, ["make: *** [all] Error 2\n"])

        registry.register("build", lambda: seen.append("h1"), "m1")
        registry.register("build", failing, "m2")
        registry.register("build", lambda: seen.append("h3"), "m3")
        with pytest.raises(StageFailure):
            registry.dispatch("build")
        assert seen == ["h1", "h2"]

    def test_arguments_are_passed(self):
        registry = HookRegistry()
        handler = mock.Mock()
        registry.register("installcheck", handler, "m1")
        registry.dispatch("installcheck", "de_DE.utf8")
        handler.assert_called_once_with("de_DE.utf8")

    def test_unknown_stage(self):
        registry = HookRegistry()
        with pytest.raises(ValueError):
            registry.register("deploy", lambda: None, "m1")
        with pytest.raises(ValueError):
            registry.dispatch("deploy")

    def test_owners(self):
        registry = HookRegistry()
        first = Skeleton("/build/HEAD", "HEAD", make_conf("/build"), "/build/HEAD/source")
        second = Skeleton("/build/HEAD", "HEAD", make_conf("/build"), "/build/HEAD/source")
        registry.register_module(first)
        registry.register_module(second)
        assert registry.owners() == [first, second]
        assert len(registry.hooks("cleanup")) == 2


class TestModuleLoading:

    def setup_method(self, test_method):
        del fake_modules.calls[:]

    def test_short_name(self):
        assert load_module_class("skeleton") is Skeleton
        assert load_module_class("Commands") is Commands

    def test_dotted_name(self):
        assert load_module_class("tests.fake_modules") is fake_modules.Recorder

    def test_unknown_module(self):
        with pytest.raises(ConfigError):
            load_module_class("no_such_module")
        with pytest.raises(ConfigError):
            # importable, but not a step module
            load_module_class("tests.test_pipeline")

    def test_parallel_unsafe(self):
        conf = make_conf("/build", modules=["skeleton"])
        assert parallel_unsafe_modules(conf) == []
        with mock.patch.object(Skeleton, "parallel_safe", False):
            assert parallel_unsafe_modules(conf) == ["skeleton"]

    def test_setup_modules(self):
        conf = make_conf("/build", modules=["tests.fake_modules", "commands", "skeleton"])
        registry = HookRegistry()
        instances = setup_modules(conf, registry, "/build/HEAD", "HEAD", "/build/HEAD/src")
        # commands sits out without stage_commands
        assert [type(x) for x in instances] == [fake_modules.Recorder, Skeleton]
        assert registry.owners() == instances
        log_lines = []
        registry.dispatch("checkout", log_lines)
        assert log_lines == ["Recorder processed checkout\n", "Skeleton processed checkout\n"]
        assert fake_modules.calls == [("checkout",)]


class TestCommandsModule:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()
        self.build_dir = os.path.join(self.tmpdir, "source.1")
        os.makedirs(self.build_dir)

    def teardown_method(self, test_method):
        shutil.rmtree(self.tmpdir)

    def module(self, commands, **items):
        conf = make_conf(self.tmpdir, stage_commands=commands, **items)
        return Commands.setup(self.tmpdir, "HEAD", conf, self.build_dir)

    def read_log(self, name):
        with open(os.path.join(self.tmpdir, "testanimal.lastrun-logs", name)) as f:
            return f.read()

    def test_runs_in_build_dir(self):
        module = self.module({"configure": "pwd; echo prefix=%(install_dir)s branch=%(branch)s"})
        module.configure()
        content = self.read_log("configure.log")
        assert os.path.realpath(self.build_dir) in content
        assert "prefix=%s" % os.path.join(self.tmpdir, "inst") in content
        assert "branch=HEAD" in content

    def test_build_env(self):
        module = self.module({"build": "echo $BF_FLAVOR"}, build_env={"BF_FLAVOR": "debug"})
        module.build()
        assert self.read_log("build.log") == "debug\n"

    def test_failure(self):
        module = self.module({"check": "echo 'regression failed'; exit 2"})
        with pytest.raises(StageFailure) as excinfo:
            module.check()
        assert excinfo.value.stage == "check"
        assert excinfo.value.status == 2
        assert excinfo.value.log == ["regression failed\n"]
        assert self.read_log("check.log") == "regression failed\n"

    def test_locale_stage(self):
        module = self.module({"installcheck": "echo LANG=%(locale)s; exit 1"})
        with pytest.raises(StageFailure) as excinfo:
            module.installcheck("de_DE.utf8")
        assert excinfo.value.stage == "installcheck-de_DE.utf8"
        assert self.read_log("installcheck-de_DE.utf8.log") == "LANG=de_DE.utf8\n"

    def test_stage_without_command(self):
        module = self.module({"build": "true"})
        module.check()
        assert not os.path.exists(os.path.join(self.tmpdir, "testanimal.lastrun-logs",
                                               "check.log"))

    def test_sits_out_without_commands(self):
        assert self.module({}) is None

    def test_resource_lock(self):
        module = self.module({"build": "true"})
        with module.resource_lock("shared-db") as lock:
            assert lock.path == os.path.join(self.tmpdir, "shared-db.resource.LCK")
            assert not module.resource_lock("shared-db").acquire(blocking=False)
        assert not lock.locked
