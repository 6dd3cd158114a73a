# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
from os import environ, path

confdir = path.abspath(path.dirname(__file__))
# use parent dir as build root when running from a checkout
rootdir = path.abspath(path.join(confdir, "..")) if confdir.endswith("conf") else confdir


class BaseConfiguration(object):
    # Name and password are assigned by the collector
    ANIMAL = "changeme"
    TARGET = "https://buildfarm.postgresql.org/cgi-bin/pgstatus.pl"
    UPLOAD_COMMAND = "/usr/libexec/buildfarm-client/send-results"

    BUILD_ROOT = path.join(rootdir, "buildroot")

    SCM = "git"
    SCMREPO = "https://git.postgresql.org/git/postgresql.git"
    SCM_URL = "https://git.postgresql.org/gitweb/?p=postgresql.git;a=commit;h="
    GIT_KEEP_MIRROR = True
    GIT_USE_WORKDIRS = True
    # Kill a hung fetch after an hour
    SCM_TIMEOUT_SECS = 3600

    BRANCHES_TO_BUILD = "ALL"
    FORCE_EVERY = {"HEAD": 24 * 7}
    THROTTLE = {
        "!RECENT": {"min_hours_since": 24},
    }

    MODULES = ["commands"]
    STAGE_COMMANDS = {
        "configure": "./configure --prefix=%(install_dir)s --enable-cassert --enable-debug",
        "build": "make -j4",
        "check": "make check",
        "install": "make install",
        "installcheck": "make installcheck",
    }
    BUILD_ENV = {"LANG": "C"}

    LOG_BACKEND = "console"


class TestConfiguration(BaseConfiguration):
    LOG_LEVEL = "debug"
    ANIMAL = "testanimal"
    BUILD_ROOT = environ.get("BUILDFARM_TEST_ROOT", "/tmp/buildfarm-test")
    GIT_KEEP_MIRROR = False
    GIT_USE_WORKDIRS = False
    SCM_TIMEOUT_SECS = 0
    BRANCHES_TO_BUILD = ["HEAD"]
    MODULES = ["skeleton"]
    NOSEND = True


class ProdConfiguration(BaseConfiguration):
    pass


class ParallelConfiguration(BaseConfiguration):
    MAX_PARALLEL = 3
    STAGGER_SECONDS = 60
    BRANCHES_TO_BUILD = "HEAD_PLUS_LATEST2"
