# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Utility functions for buildfarm_client. """

from __future__ import absolute_import
import logging
import os
import signal
import subprocess as sp
import threading
import time

log = logging.getLogger(__name__)


def time_str():
    return time.strftime("[%H:%M:%S] ")


def run_log(cmd, cwd=None, env=None, shell=False):
    """ Runs a command with stderr merged into stdout.

    :param cmd: the command, a list, or a string when shell is True
    :param str cwd: working directory of the command
    :param dict env: extra environment variables
    :returns: tuple (status, list of output lines)
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    log.debug("Running %r in %s" % (cmd, cwd or os.getcwd()))
    try:
        proc = sp.Popen(cmd, stdout=sp.PIPE, stderr=sp.STDOUT, cwd=cwd, env=full_env,
                        shell=shell, universal_newlines=True)
    except OSError as e:
        return 127, ["%s: %s\n" % (cmd if shell else cmd[0], e)]
    stdout, _ = proc.communicate()
    lines = stdout.splitlines(True) if stdout else []
    return proc.returncode, lines


def read_timestamp(path):
    """ Reads the number stored in a one line state file.

    :returns: int, or None when the file does not exist
    """
    try:
        with open(path) as f:
            value = f.readline().strip()
    except (IOError, OSError):
        return None
    try:
        return int(float(value))
    except ValueError:
        log.warning("Ignoring garbage in %s: %r" % (path, value))
        return None


def write_line(path, value):
    """ Writes a one line state file, replacing it atomically. """
    tmp = "%s.tmp.%d" % (path, os.getpid())
    with open(tmp, "w") as f:
        f.write("%s\n" % value)
    os.rename(tmp, path)


def read_line(path):
    try:
        with open(path) as f:
            return f.readline().strip() or None
    except (IOError, OSError):
        return None


def _kill_process_group(secs):
    log.error("Synchronization did not finish in %s seconds, terminating" % secs)
    os.killpg(os.getpgrp(), signal.SIGTERM)


def spawn_watchdog(secs):
    """ Starts a timer that terminates the whole process group after `secs`.

    A hung network fetch must not wedge the scheduled run. The caller
    cancels the returned timer once the guarded work is finished.

    :param int secs: timeout in seconds, a false value disables the watchdog
    :returns: threading.Timer or None
    """
    if not secs:
        return None
    log.debug("Waiting %s secs before timing out the process group" % secs)
    timer = threading.Timer(secs, _kill_process_group, args=(secs,))
    timer.daemon = True
    timer.start()
    return timer
