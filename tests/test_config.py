# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import logging
import os
import shutil
import tempfile

import mock
import pytest

from buildfarm_client.common import config
from buildfarm_client.common.errors import ConfigError

CONFIG_FILE = """
class BaseConfiguration(object):
    ANIMAL = "lorikeet"
    BUILD_ROOT = "/build"
    BRANCHES_TO_BUILD = "ALL"
    MAX_PARALLEL = "2"
    EXTRA_THING = 42


class ProdConfiguration(BaseConfiguration):
    pass


class OtherConfiguration(BaseConfiguration):
    ANIMAL = "kestrel"
    SCM = "CVS"
"""


class TestConfig:

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp()
        self.config_file = os.path.join(self.tmpdir, "config.py")
        with open(self.config_file, "w") as f:
            f.write(CONFIG_FILE)

    def teardown_method(self, test_method):
        shutil.rmtree(self.tmpdir)

    def test_defaults(self):
        conf = config.Config()
        assert conf.scm == "git"
        assert conf.source_dir == "source"
        assert conf.git_default_branch == "master"
        assert conf.git_reference_branch == "HEAD"
        assert conf.git_ignore_mirror_failure is True
        assert conf.locales == ["C"]
        assert conf.max_parallel == 0
        assert conf.throttle == {}
        assert conf.log_level == logging.NOTSET

    def test_from_dict_converts_values(self):
        conf = config.from_dict({
            "ANIMAL": "lorikeet",
            "build_root": "/build/",
            "git_keep_mirror": "yes",
            "nosend": "0",
            "max_parallel": "4",
            "log_level": "info",
        })
        assert conf.animal == "lorikeet"
        assert conf.build_root == "/build"
        assert conf.git_keep_mirror is True
        assert conf.nosend is False
        assert conf.max_parallel == 4
        assert conf.log_level == logging.INFO

    def test_lock_dir(self):
        conf = config.from_dict({"build_root": "/build"})
        assert conf.lock_dir == "/build"
        conf.set_item("global_lock_dir", "/var/lock/buildfarm")
        assert conf.lock_dir == "/var/lock/buildfarm"

    @pytest.mark.parametrize("name,value", [
        ("scm", "svn"),
        ("cvsmethod", "rsync"),
        ("build_root", "relative/path"),
        ("max_parallel", -1),
        ("throttle", ["HEAD"]),
        ("throttle", {"HEAD": {"min_hours": 3}}),
        ("modules", "commands"),
        ("log_level", "chatty"),
        ("set_item", "x"),
    ])
    def test_invalid_values(self, name, value):
        with pytest.raises(ConfigError):
            config.from_dict({name: value})

    def test_steps_from_string(self):
        conf = config.from_dict({"skip_steps": "check, installcheck"})
        assert conf.skip_steps == ["check", "installcheck"]
        assert conf.only_steps == []

    def test_force_every(self):
        conf = config.from_dict({"force_every": {"HEAD": 24, "default": 168}})
        assert conf.force_every_for("HEAD") == 24
        assert conf.force_every_for("REL_16_STABLE") == 168
        conf.set_item("force_every", 12)
        assert conf.force_every_for("HEAD") == 12

    def test_overrides(self):
        conf = config.from_dict({"locales": ["C"], "build_env": {"LANG": "C"}})
        config.config_set(conf, [
            "locales+=de_DE.utf8",
            "build_env.PATH=/usr/local/bin",
            "max_parallel=3",
            "skip_steps=check,install",
        ])
        assert conf.locales == ["C", "de_DE.utf8"]
        assert conf.build_env == {"LANG": "C", "PATH": "/usr/local/bin"}
        assert conf.max_parallel == 3
        assert conf.skip_steps == ["check", "install"]

    @pytest.mark.parametrize("setting", [
        "branches_to_build=HEAD",
        "global_lock_dir=/tmp",
        "no_such_item=1",
        "max_parallel+=1",
        "locales.x=y",
        "build_env=PATH",
        "garbage",
    ])
    def test_invalid_overrides(self, setting):
        with pytest.raises(ConfigError):
            config.config_set(config.Config(), [setting])

    def test_from_file(self):
        conf = config.from_file(self.config_file)
        assert conf.animal == "lorikeet"
        assert conf.branches_to_build == "ALL"
        assert conf.max_parallel == 2
        assert conf.extra_thing == 42
        assert conf.config_file == self.config_file

    def test_from_file_section(self):
        conf = config.from_file(self.config_file, "OtherConfiguration")
        assert conf.animal == "kestrel"
        assert conf.scm == "cvs"

    @mock.patch.dict(os.environ, {"BUILDFARM_CONFIG_SECTION": "OtherConfiguration"})
    def test_from_file_section_from_environment(self):
        assert config.from_file(self.config_file).animal == "kestrel"

    def test_from_file_errors(self):
        with pytest.raises(ConfigError):
            config.from_file(os.path.join(self.tmpdir, "missing.py"))
        with pytest.raises(ConfigError):
            config.from_file(self.config_file, "NoSuchConfiguration")
        broken = os.path.join(self.tmpdir, "broken.py")
        with open(broken, "w") as f:
            f.write("class ProdConfiguration(\n")
        with pytest.raises(ConfigError):
            config.from_file(broken)

    def test_sample_config_loads(self):
        sample = os.path.join(os.path.dirname(__file__), "..", "conf", "config.py")
        conf = config.from_file(sample, "TestConfiguration")
        assert conf.animal == "testanimal"
        assert conf.modules == ["skeleton"]
        assert conf.nosend is True
