# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Runs a shell command per stage.

The commands come from the stage_commands setting, keyed by stage name:

    STAGE_COMMANDS = {
        "configure": "./configure --prefix=%(install_dir)s",
        "build": "make -j4",
        "check": "make check",
        "install": "make install",
        "installcheck": "make installcheck LANG=%(locale)s",
    }

Commands run in the build directory with build_env added to the
environment. Placeholders: %(branch)s, %(build_dir)s, %(install_dir)s and,
for the per locale stages, %(locale)s.
"""

from __future__ import absolute_import
import logging
import os

from buildfarm_client.common.logger import BranchRunLogs
from buildfarm_client.common.utils import run_log
from buildfarm_client.pipeline import stages
from buildfarm_client.pipeline.module import StepModule

log = logging.getLogger(__name__)


class Commands(StepModule):

    name = "commands"

    def __init__(self, build_root, branch, conf, build_dir):
        super(Commands, self).__init__(build_root, branch, conf, build_dir)
        self.logs = BranchRunLogs(build_root, conf.animal)
        self.install_dir = os.path.join(build_root, "inst")

    @classmethod
    def setup(cls, build_root, branch, conf, build_dir):
        if not conf.stage_commands:
            log.warning("The commands module is loaded but no stage_commands are set")
            return None
        return cls(build_root, branch, conf, build_dir)

    def run_stage(self, stage, locale=None):
        command = self.conf.stage_commands.get(stage)
        if not command:
            return
        values = {
            "branch": self.branch,
            "build_dir": self.build_dir,
            "install_dir": self.install_dir,
            "locale": locale or "",
        }
        command = command % values
        logname = "%s-%s" % (stage, locale) if locale else stage
        log.info("Running %s: %s" % (logname, command))
        status, lines = run_log(command, cwd=self.build_dir, env=self.conf.build_env, shell=True)
        self.logs.writelog(logname, lines)
        if self.conf.verbose > 1:
            log.info("======== %s log ===========\n%s" % (logname, "".join(lines)))
        if status:
            self.fail(logname, status, lines)

    def configure(self):
        self.run_stage(stages.CONFIGURE)

    def build(self):
        self.run_stage(stages.BUILD)

    def check(self):
        self.run_stage(stages.CHECK)

    def install(self):
        self.run_stage(stages.INSTALL)

    def installcheck(self, locale):
        self.run_stage(stages.INSTALLCHECK, locale)

    def locale_end(self, locale):
        self.run_stage(stages.LOCALE_END, locale)

    def cleanup(self):
        self.run_stage(stages.CLEANUP)


module_class = Commands
