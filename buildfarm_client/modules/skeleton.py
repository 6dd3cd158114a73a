# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
A step module doing nothing but announcing the stages it sees.

Copy it as a starting point for a new module.
"""

from __future__ import absolute_import

from buildfarm_client.pipeline.module import StepModule


class Skeleton(StepModule):

    name = "skeleton"

    def checkout(self, log_lines):
        self.trace("checking out")
        log_lines.append("Skeleton processed checkout\n")

    def setup_target(self):
        self.trace("setting up")

    def need_run(self, decision):
        self.trace("checking if run needed by")

    def configure(self):
        self.trace("configuring")

    def build(self):
        self.trace("building")

    def check(self):
        self.trace("checking")

    def install(self):
        self.trace("installing")

    def installcheck(self, locale):
        self.trace("installchecking %s" % locale)

    def locale_end(self, locale):
        self.trace("end of locale %s processing" % locale)

    def cleanup(self):
        if self.conf.verbose > 1:
            self.trace("cleaning up")


module_class = Skeleton
