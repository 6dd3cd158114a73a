# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""
This module defines the stages of a branch run, in the order they fire.

Step modules attach to a stage by implementing the method named after it,
with dashes turned into underscores: the "setup-target" stage calls
setup_target(). Stages taking arguments:

    checkout      (log_lines)  list the module may append its own log to
    need-run      (decision)   NeedRun the module may flag
    installcheck  (locale)
    locale-end    (locale)
"""

CHECKOUT = "checkout"
SETUP_TARGET = "setup-target"
NEED_RUN = "need-run"
CONFIGURE = "configure"
BUILD = "build"
CHECK = "check"
INSTALL = "install"
INSTALLCHECK = "installcheck"
LOCALE_END = "locale-end"
CLEANUP = "cleanup"

STAGES = (
    CHECKOUT,
    NEED_RUN,
    SETUP_TARGET,
    CONFIGURE,
    BUILD,
    CHECK,
    INSTALL,
    INSTALLCHECK,
    LOCALE_END,
    CLEANUP,
)

# Stages run once per configured locale, after install.
LOCALE_STAGES = (INSTALLCHECK, LOCALE_END)


def method_name(stage):
    if stage not in STAGES:
        raise ValueError("Unknown stage %r" % stage)
    return stage.replace("-", "_")


def step_wanted(conf, step):
    """ Whether the skip_steps / only_steps options let `step` run. """
    if conf.only_steps:
        return step in conf.only_steps
    return step not in conf.skip_steps


class NeedRun(object):
    """ Passed to the need-run stage; modules set `needed` to force a run. """

    def __init__(self, needed=False):
        self.needed = needed
        self.reasons = []

    def request(self, reason):
        self.needed = True
        self.reasons.append(reason)
