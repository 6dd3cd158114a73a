# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
Logging functions.

At the beginning of the client run, the init_logging() function must be
called with the configuration object. The backend, the level and the log
file are taken from the configuration.

Use conf.log_backend option to set the logging backend:
    console - logs to stderr
    file - logs to the file set by conf.log_file

Every module then just uses the standard logging module:

    log = logging.getLogger(__name__)
    log.info("Checking out %s" % branch)

Besides the process wide log, each branch run keeps its own log directory
with one file per pipeline stage. See BranchRunLogs.
"""

from __future__ import absolute_import
import logging
import os
import shutil

levels = {
    "debug": logging.DEBUG,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
}

log_format = "%(asctime)s - %(process)d - %(name)s - %(levelname)s - %(message)s"


def str_to_log_level(level):
    """
    Returns internal representation of logging level defined
    by the string `level`.

    Available levels are: debug, info, warning, error
    """
    if not level:
        return logging.NOTSET

    return levels[level]


def supported_log_backends():
    return ("console", "file")


def init_logging(conf):
    """
    Initializes logging according to configuration file.
    """
    log_backend = conf.log_backend

    if not log_backend or log_backend == "console":
        logging.basicConfig(level=conf.log_level, format=log_format)
    else:
        logging.basicConfig(filename=conf.log_file, level=conf.log_level, format=log_format)
    log = logging.getLogger()
    log.setLevel(conf.log_level)


class BranchRunLogs(object):
    """
    Manages the log directory of a single branch run.

    The directory lives in the branch root and is named after the animal,
    e.g. "/build/HEAD/lorikeet.lastrun-logs". Each stage writes its own
    "<stage>.log" file there; the reporter later bundles them all.
    """

    def __init__(self, branch_root, animal, dirname="lastrun-logs", level=logging.INFO):
        self.branch_root = branch_root
        self.path = os.path.join(branch_root, "%s.%s" % (animal, dirname))
        self.level = level
        self.handler = None

    def clean(self):
        """ Removes the logs of the previous run and recreates the directory. """
        if os.path.isdir(self.path):
            shutil.rmtree(self.path)
        os.makedirs(self.path)

    def ensure(self):
        if not os.path.isdir(self.path):
            os.makedirs(self.path)

    def writelog(self, stage, lines):
        """ Writes log lines of a stage to "<stage>.log". """
        self.ensure()
        with open(os.path.join(self.path, "%s.log" % stage), "w") as f:
            for line in lines:
                f.write(line if line.endswith("\n") else line + "\n")

    def logfiles(self):
        """ Returns the stage log files ordered by modification time. """
        if not os.path.isdir(self.path):
            return []
        names = [n for n in os.listdir(self.path) if n.endswith(".log")]
        return sorted(names, key=lambda n: os.stat(os.path.join(self.path, n)).st_mtime)

    def start(self):
        """ Starts capturing the process log into "run.log" of this directory. """
        if self.handler:
            return
        self.ensure()
        self.handler = logging.FileHandler(os.path.join(self.path, "run.log"))
        self.handler.setLevel(self.level)
        self.handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(self.handler)

    def stop(self):
        if not self.handler:
            return
        logging.getLogger().removeHandler(self.handler)
        self.handler.close()
        self.handler = None
