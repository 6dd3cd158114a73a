# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Generic source synchronization interface."""

from __future__ import absolute_import
from abc import ABCMeta, abstractmethod
from collections import namedtuple
import enum
import logging
import os
import shutil

from buildfarm_client.common.errors import ConfigError

log = logging.getLogger(__name__)

FULL = "full"
LINKED = "linked"


class ChangeSet(namedtuple("ChangeSet", ["current_snap", "changed_files",
                                         "changed_since_success"])):
    """
    What changed in a working copy relative to the last run and the last
    successful run.

    :ivar int current_snap: the latest modification time seen in the tree
    :ivar list changed_files: (path, revision) pairs changed since the last run
    :ivar list changed_since_success: (path, revision) pairs changed after the
        last success but not after the last run
    """
    __slots__ = ()

    @property
    def files(self):
        return [path for path, _ in self.changed_files]

    @property
    def files_since_success(self):
        return [path for path, _ in self.changed_since_success]


class LinkStatus(enum.Enum):
    OK = "ok"
    MISSING = "missing"
    NOT_A_LINK = "not a link"
    DANGLING = "dangling"


def check_link(path):
    """ Validates one symlink of a linked work-tree.

    :param str path: the path expected to be a symlink into the reference
    :returns: LinkStatus
    """
    if not os.path.lexists(path):
        return LinkStatus.MISSING
    if not os.path.islink(path):
        return LinkStatus.NOT_A_LINK
    if not os.path.exists(path):
        return LinkStatus.DANGLING
    return LinkStatus.OK


class WorkingCopy(object):
    """
    The on-disk checkout of one branch.

    A working copy is either a full copy with its own object storage, or a
    linked work-tree whose repository metadata are symlinks into the working
    copy of a reference branch.
    """

    def __init__(self, path, branch, kind=FULL, reference=None):
        if kind not in (FULL, LINKED):
            raise ValueError("Unknown working copy kind %r" % kind)
        if kind == LINKED and not reference:
            raise ValueError("A linked work-tree needs a reference")
        self.path = path
        self.branch = branch
        self.kind = kind
        self.reference = reference

    def __repr__(self):
        if self.kind == LINKED:
            return "<WorkingCopy %s of %s linked to %s>" % (self.path, self.branch, self.reference)
        return "<WorkingCopy %s of %s>" % (self.path, self.branch)

    @property
    def is_linked(self):
        return self.kind == LINKED

    def exists(self):
        return os.path.isdir(self.path)


class GenericSCM(metaclass=ABCMeta):
    """
    External API for the version control backends.

    Example usage:
        scm = GenericSCM.create(conf, "/build/HEAD", "HEAD")
        scm.check_access()
        log_lines, head = scm.checkout()
        changes = scm.find_changed(state.last_run_snap, state.last_success_snap)
        ...
        scm.cleanup()
    """

    backend = "generic"
    backends = {}

    def __init__(self, conf, branch_root, branch):
        self.conf = conf
        self.branch_root = branch_root
        self.branch = branch
        self.working_copy = WorkingCopy(
            os.path.join(branch_root, conf.source_dir), branch)

    @classmethod
    def register_backend_class(cls, backend_class):
        GenericSCM.backends[backend_class.backend] = backend_class

    @classmethod
    def create(cls, conf, branch_root, branch, **extra):
        """
        :param conf: instance of buildfarm_client.common.config.Config
        :param str branch_root: the directory of the branch
        :param str branch: the branch name, e.g. HEAD or REL_16_STABLE
        """
        if conf.scm not in GenericSCM.backends:
            raise ConfigError("SCM backend %r not recognized." % conf.scm)
        return GenericSCM.backends[conf.scm](conf, branch_root, branch, **extra)

    @property
    def source_path(self):
        return self.working_copy.path

    def check_access(self):
        """ Makes sure the upstream can be accessed without interaction. """

    def copy_source_required(self):
        """ Whether the build happens in a copy of the working copy. """
        return True

    def get_build_path(self):
        """ The directory the build happens in. """
        return os.path.join(self.branch_root, "%s.%d" % (self.conf.source_dir, os.getpid()))

    def copy_source(self, dest):
        shutil.copytree(self.source_path, dest, symlinks=True)

    def get_upstream_head(self, branch=None):
        """ Returns the upstream head revision of `branch`, None if unknown. """
        return None

    def get_upstream_branches(self):
        """ Returns the list of upstream branch names, None if unknown. """
        return None

    @abstractmethod
    def checkout(self):
        """
        Brings the working copy of the branch up to date with upstream,
        creating it first if needed.

        :returns: tuple (log lines, head revision)
        :raises: SyncFailure
        """
        raise NotImplementedError()

    @abstractmethod
    def find_changed(self, last_run_snap, last_success_snap):
        """
        Classifies the files changed in the working copy.

        A file touched after `last_run_snap` is changed since the last run.
        A file touched after `last_success_snap` and not after
        `last_run_snap` is changed since success. No file is in both lists.

        :returns: ChangeSet
        """
        raise NotImplementedError()

    @abstractmethod
    def get_versions(self, files):
        """
        :param list files: paths relative to the working copy
        :returns: list of (path, revision) pairs, for reporting only
        """
        raise NotImplementedError()

    def update_mirror(self):
        """ Updates the shared mirror, if the backend keeps one. """

    @abstractmethod
    def cleanup(self):
        """ Removes scratch state between runs, never the tracked history. """
        raise NotImplementedError()

    def rm_worktree(self):
        """ Removes the checked out files of the working copy. """
