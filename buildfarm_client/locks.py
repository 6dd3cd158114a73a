# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""File based locks.

Locks are the only thing build processes on one host coordinate through.
There are a few kinds of them:

- the global lock, held by one branch scheduler invocation for its lifetime
  so that two schedulers never work the same lock directory at once,
- the branch lock, held by the process building a branch for the whole
  pipeline,
- resource locks, held by step modules around a shared external resource,
- setup locks, held while a shared reference working copy is set up,
- running locks, one per parallel branch run, counted to cap parallelism.

All of them are advisory flock() locks on a file. A lock belongs to the
open file description, so a running lock taken by the scheduler is handed to
the child process by passing the descriptor on and stays held until the
child exits.
"""

from __future__ import absolute_import
import errno
import fcntl
import glob
import logging
import os

from buildfarm_client.common.errors import CoordinationError, RunSkipped

log = logging.getLogger(__name__)

RUNNING_SUFFIX = ".running.LCK"


class LockBusy(RunSkipped):
    """ Raised when a non-blocking lock is held by somebody else. """


class FileLock(object):
    """
    An exclusive lock on a file.

    Example usage:

        lock = FileLock("/build/HEAD/builder.LCK")
        if not lock.acquire():
            ... # somebody else is building HEAD
        try:
            ...
        finally:
            lock.release()

    or, raising LockBusy when the lock is taken:

        with FileLock("/build/HEAD/builder.LCK"):
            ...
    """

    def __init__(self, path, blocking=False):
        """
        :param str path: the lock file, created if missing
        :param bool blocking: whether the context manager waits for the lock
        """
        self.path = path
        self.blocking = blocking
        self._fd = None

    def __repr__(self):
        return "<FileLock %s%s>" % (self.path, " (held)" if self.locked else "")

    @property
    def locked(self):
        return self._fd is not None

    def fileno(self):
        return self._fd

    def acquire(self, blocking=None):
        """ Takes the lock.

        :param bool blocking: wait until the lock is free; defaults to the
            value given to the constructor
        :returns: bool -- True if the lock is now held by us
        """
        if self.locked:
            return True
        if blocking is None:
            blocking = self.blocking
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise CoordinationError("Cannot open lock file %s: %s" % (self.path, e))

        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(fd, flags)
        except (IOError, OSError) as e:
            os.close(fd)
            if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
                log.debug("Lock %s is held by another process" % self.path)
                return False
            raise CoordinationError("Cannot lock %s: %s" % (self.path, e))

        self._fd = fd
        log.debug("Acquired lock %s" % self.path)
        return True

    def release(self):
        if not self.locked:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        log.debug("Released lock %s" % self.path)

    def detach(self):
        """ Forgets about the held lock without unlocking it.

        Used after the descriptor was handed over to a child process, which
        keeps the lock until it exits.
        """
        if self.locked:
            os.close(self._fd)
            self._fd = None

    def __enter__(self):
        if not self.acquire():
            raise LockBusy("Another process holds the lock on %s" % self.path)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False


def _ensure_lock_dir(path):
    if not path or not os.path.isdir(path):
        raise CoordinationError("No lock directory: %s" % path)
    return path


def global_lock(conf):
    """ The lock guarding a whole branch scheduler invocation. """
    lock_dir = _ensure_lock_dir(conf.lock_dir)
    return FileLock(os.path.join(lock_dir, "GLOBAL.lck"))


def parallel_lock(conf):
    """ The short lived lock held while counting and creating running locks. """
    lock_dir = _ensure_lock_dir(conf.lock_dir)
    return FileLock(os.path.join(lock_dir, "parallel.LCK"), blocking=True)


def branch_lock(branch_root):
    """ The lock a process holds while it builds the branch in `branch_root`. """
    return FileLock(os.path.join(branch_root, "builder.LCK"))


def setup_lock(path):
    """ The lock held while the shared working copy at `path` is set up.

    Waiting is correct here: a process that gave up would leave its linked
    work-tree without a reference to link to.
    """
    return FileLock(path.rstrip("/") + ".setup.LCK", blocking=True)


def resource_lock(conf, name, blocking=True):
    """ A lock around a shared, non reentrant resource such as a test database.

    Step modules take it for as long as they use the resource:

        with resource_lock(self.conf, "shared-db"):
            ...
    """
    lock_dir = _ensure_lock_dir(conf.lock_dir)
    return FileLock(os.path.join(lock_dir, "%s.resource.LCK" % name), blocking=blocking)


def running_lock(conf, branch):
    lock_dir = _ensure_lock_dir(conf.lock_dir)
    name = "%s.%s%s" % (conf.animal or "animal", branch, RUNNING_SUFFIX)
    return FileLock(os.path.join(lock_dir, name))


def count_running(lock_dir):
    """ Counts the running locks still held by live processes.

    A running lock file that we can lock ourselves belongs to a process
    that has exited; such stale files are removed.

    :param str lock_dir: directory holding the running lock files
    :returns: int -- number of live running locks
    """
    live = 0
    for path in glob.glob(os.path.join(lock_dir, "*" + RUNNING_SUFFIX)):
        probe = FileLock(path)
        if probe.acquire(blocking=False):
            log.debug("Removing stale running lock %s" % path)
            try:
                os.unlink(path)
            except OSError as e:
                if e.errno != errno.ENOENT:
                    raise
            probe.release()
        else:
            live += 1
    return live
