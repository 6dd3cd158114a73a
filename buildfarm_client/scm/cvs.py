# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""CVS synchronization.

CVS has no cheap way of asking what changed, so change detection compares
file modification times with the snapshots of earlier runs.
"""

from __future__ import absolute_import
import logging
import os
import re
import shutil

from buildfarm_client.common.errors import SyncFailure
from buildfarm_client.common.utils import run_log
from buildfarm_client.scm.base import ChangeSet, GenericSCM

log = logging.getLogger(__name__)

DEFAULT_CVSROOT = ":pserver:anoncvs@anoncvs.postgresql.org:/projects/cvsroot"

# Long command lines choke some shells, so cvs status goes in batches.
STATUS_CHUNK = 200

_status_re = re.compile(
    r"Working revision:\s+(\d+(?:\.\d+)+).*?Repository revision:\s+\S+\s+(\S+),v", re.S)


class CVSSCM(GenericSCM):
    """CVS backend, either exporting a fresh tree or updating a checkout."""

    backend = "cvs"

    def __init__(self, conf, branch_root, branch):
        super(CVSSCM, self).__init__(conf, branch_root, branch)
        self.cvsroot = conf.scmrepo or DEFAULT_CVSROOT
        self.method = conf.cvsmethod
        self.module = conf.cvs_module
        self.ignore_files = set()

    def _cvs(self, args, cwd=None):
        return run_log(["cvs", "-d", self.cvsroot] + list(args), cwd=cwd)

    def check_access(self):
        """ Makes sure a pserver login was done, cvs would prompt otherwise. """
        if not self.cvsroot.startswith(":pserver:"):
            return
        server = self.cvsroot.split(":")[2]
        wanted = ":pserver:%s:" % server
        try:
            with open(os.path.expanduser("~/.cvspass")) as f:
                for line in f:
                    if wanted in line:
                        return
        except (IOError, OSError):
            pass
        raise SyncFailure("CVS", "Need to login to :pserver:%s first" % server)

    def copy_source_required(self):
        return self.method != "export"

    def get_build_path(self):
        if self.method == "export":
            return self.source_path
        return super(CVSSCM, self).get_build_path()

    def _tag_args(self):
        # cvs misbehaves with an explicit HEAD on checkout and update
        return [] if self.branch == "HEAD" else ["-r", self.branch]

    def checkout(self):
        if self.method == "export":
            if os.path.isdir(self.source_path):
                shutil.rmtree(self.source_path)
            # export always needs a tag
            status, cvslog = self._cvs(["export", "-r", self.branch, "-d", self.conf.source_dir,
                                        self.module], cwd=self.branch_root)
        elif os.path.isdir(self.source_path):
            status, cvslog = self._cvs(["update", "-d", "-P"] + self._tag_args(),
                                       cwd=self.source_path)
        else:
            status, cvslog = self._cvs(["checkout", "-P"] + self._tag_args()
                                       + ["-d", self.conf.source_dir, self.module],
                                       cwd=self.branch_root)
        if self.method != "export" and os.path.isdir(self.source_path):
            self.find_ignore()

        if status:
            raise SyncFailure("CVS", "cvs %s failed with status %s" % (self.method, status),
                              cvslog)
        self.check_update_log(cvslog)
        return cvslog, None

    def check_update_log(self, cvslog):
        """ Refuses to go on with conflicts, local modifications or stray files.

        :raises: SyncFailure
        """
        conflicts = [line for line in cvslog if line.startswith("C ")]
        if conflicts:
            raise SyncFailure("CVS-Merge", "%d merge conflicts" % len(conflicts), cvslog)
        modified = [line for line in cvslog if line.startswith("M ")]
        if modified:
            raise SyncFailure("CVS-Dirty", "%d locally modified files" % len(modified), cvslog)
        unknown = [line for line in cvslog if line.startswith("? ")]
        if unknown:
            raise SyncFailure("CVS-Extraneous-Files", "%d unknown files" % len(unknown), cvslog)
        leftover = ["X %s\n" % os.path.relpath(path, self.source_path)
                    for path in sorted(self.ignore_files) if os.path.lexists(path)]
        if leftover:
            raise SyncFailure("CVS-Extraneous-Ignore", "%d ignored files left behind"
                              % len(leftover), leftover)

    def find_ignore(self):
        """ Collects the files listed in the .cvsignore files of the working copy. """
        self.ignore_files = set()
        for dirpath, dirnames, filenames in os.walk(self.source_path):
            if self.method == "update" and "CVS" in dirnames:
                dirnames.remove("CVS")
            if ".cvsignore" not in filenames:
                continue
            with open(os.path.join(dirpath, ".cvsignore")) as f:
                for name in f.read().split():
                    self.ignore_files.add(os.path.join(dirpath, name))
        return self.ignore_files

    def find_changed(self, last_run_snap, last_success_snap):
        current_snap = 0
        changed = []
        since_success = []
        for dirpath, dirnames, filenames in os.walk(self.source_path):
            if self.method == "update" and "CVS" in dirnames:
                dirnames.remove("CVS")
            for name in filenames:
                path = os.path.join(dirpath, name)
                if os.path.islink(path):
                    continue
                mtime = int(os.lstat(path).st_mtime)
                current_snap = max(current_snap, mtime)
                relpath = os.path.relpath(path, self.source_path)
                if not last_run_snap:
                    continue
                if mtime > last_run_snap:
                    changed.append((relpath, None))
                elif last_success_snap and mtime > last_success_snap:
                    since_success.append((relpath, None))
        return ChangeSet(current_snap, sorted(changed), sorted(since_success))

    def get_versions(self, files):
        if self.method == "export" or not files:
            return [(path, None) for path in files]
        output = []
        files = list(files)
        for start in range(0, len(files), STATUS_CHUNK):
            chunk = files[start:start + STATUS_CHUNK]
            status, lines = self._cvs(["status"] + chunk, cwd=self.source_path)
            output.extend(lines)
            if status:
                raise SyncFailure("CVS-status", "cvs status failed with status %s" % status,
                                  output)
        return self.parse_status("".join(output))

    def parse_status(self, text):
        """ Extracts (path, working revision) pairs from cvs status output. """
        marker = "/%s/" % self.module
        versions = []
        for chunk in text.split("File:")[1:]:
            match = _status_re.search(chunk)
            if not match:
                continue
            revision, repo_path = match.groups()
            if marker in repo_path:
                repo_path = repo_path.split(marker, 1)[1]
            repo_path = repo_path.replace("Attic/", "")
            versions.append((repo_path, revision))
        return versions

    def cleanup(self):
        for path in self.ignore_files:
            if os.path.lexists(path) and not os.path.isdir(path):
                os.unlink(path)


GenericSCM.register_backend_class(CVSSCM)
