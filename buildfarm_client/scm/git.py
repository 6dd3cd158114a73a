# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""Git synchronization.

Layout in the build root, with both the mirror and linked work-trees enabled:

    <build_root>/mirror.git           bare mirror of the upstream repository
    <build_root>/HEAD/source          reference working copy, cloned from the mirror
    <build_root>/REL_16_STABLE/source linked work-tree: its .git holds symlinks
                                      into HEAD/source/.git plus its own HEAD
                                      and index

Every working copy has a local branch bf_<branch> tracking the upstream
branch. The HEAD branch tracks the upstream default branch.
"""

from __future__ import absolute_import
import logging
import os
import shutil
import time

from buildfarm_client.common.errors import ConfigError, MissingBranch, SyncFailure
from buildfarm_client.common.utils import read_timestamp, run_log, write_line
from buildfarm_client.locks import setup_lock
from buildfarm_client.scm.base import (
    LINKED, ChangeSet, GenericSCM, LinkStatus, WorkingCopy, check_link)
from buildfarm_client.state import HEAD_REVISION_FILE

log = logging.getLogger(__name__)

# Repository metadata shared by a linked work-tree with its reference.
LINKED_ITEMS = ("config", "refs", "logs/refs", "objects", "info", "hooks",
                "packed-refs", "remotes", "rr-cache", "svn")

MIRROR_NAME = "mirror.git"
GC_MARKER = "bf_last_gc"
WORKTREE_REMOVED_MARKER = "bf_worktree_removed"
RENAME_TRAIL = "default-branch-rename.trail"


def parse_log(lines):
    """ Parses `git log --name-only --pretty=format:commit %H` output.

    :returns: dict mapping each file to the most recent commit touching it
    """
    commit = None
    changed = {}
    for line in lines:
        line = line.rstrip()
        if not line:
            continue
        if line.startswith("commit "):
            commit = line.split()[1]
        else:
            changed.setdefault(line, commit)
    return changed


class GitSCM(GenericSCM):
    """Git backend, optionally with a shared mirror and linked work-trees."""

    backend = "git"

    def __init__(self, conf, branch_root, branch):
        super(GitSCM, self).__init__(conf, branch_root, branch)
        if not conf.scmrepo:
            raise ConfigError("No upstream repository (scmrepo) configured")
        self.upstream = conf.scmrepo
        self.mirror_path = os.path.join(conf.build_root, MIRROR_NAME)
        self.use_mirror = conf.git_keep_mirror
        self.local_branch = "bf_%s" % branch
        self.reference_path = os.path.join(
            conf.build_root, conf.git_reference_branch, conf.source_dir)
        if conf.git_use_workdirs and branch != conf.git_reference_branch:
            self.working_copy = WorkingCopy(self.working_copy.path, branch,
                                            kind=LINKED, reference=self.reference_path)
        self._default_branch = None
        self.changed_since_last_run = {}
        self.changed_since_success = {}

    @property
    def clone_source(self):
        """ Where working copies clone and fetch from. """
        return self.mirror_path if self.use_mirror else self.upstream

    @property
    def remote_branch(self):
        """ The upstream branch the local bf_<branch> tracks. """
        if self.branch != "HEAD":
            return self.branch
        if self._default_branch is None:
            self._default_branch = self.local_default_branch() or self.conf.git_default_branch
        return self._default_branch

    @staticmethod
    def _git(args, cwd=None):
        return run_log(["git"] + list(args), cwd=cwd)

    def _git_or_fail(self, args, gitlog, cwd=None, stage="Git"):
        status, lines = self._git(args, cwd=cwd)
        gitlog.extend(lines)
        if status:
            raise SyncFailure(stage, "git %s failed with status %s" % (" ".join(args), status),
                              gitlog)
        return lines

    # Upstream queries, one network round-trip each

    def _ls_remote(self, *args):
        status, lines = self._git(["ls-remote"] + list(args) + [self.upstream])
        if status:
            log.warning("git ls-remote %s failed with status %s" % (self.upstream, status))
            return None
        return lines

    def get_upstream_head(self, branch=None):
        branch = branch or self.branch
        if branch == "HEAD":
            lines = self._ls_remote()
            wanted = "HEAD"
        else:
            lines = self._ls_remote("--heads")
            wanted = "refs/heads/%s" % branch
        for line in lines or []:
            fields = line.split()
            if len(fields) == 2 and fields[1] == wanted:
                return fields[0]
        return None

    def get_upstream_branches(self):
        lines = self._ls_remote("--heads")
        if lines is None:
            return None
        branches = []
        for line in lines:
            fields = line.split()
            if len(fields) == 2 and fields[1].startswith("refs/heads/"):
                branches.append(fields[1][len("refs/heads/"):])
        return branches

    def get_upstream_default_branch(self):
        """ The default branch upstream advertises through its HEAD symref. """
        status, lines = self._git(["ls-remote", "--symref", self.upstream, "HEAD"])
        if status:
            log.warning("Cannot get the default branch of %s" % self.upstream)
            return None
        for line in lines:
            if line.startswith("ref:"):
                ref = line.split()[1]
                if ref.startswith("refs/heads/"):
                    return ref[len("refs/heads/"):]
        return None

    def local_default_branch(self):
        """ The default branch recorded locally, in the mirror or the working copy. """
        if self.use_mirror and os.path.isdir(self.mirror_path):
            status, lines = self._git(["--git-dir=%s" % self.mirror_path,
                                       "symbolic-ref", "-q", "HEAD"])
            prefix = "refs/heads/"
        else:
            path = self.source_path if os.path.isdir(self.source_path) else self.reference_path
            if not os.path.isdir(os.path.join(path, ".git")):
                return None
            status, lines = self._git(["symbolic-ref", "-q", "refs/remotes/origin/HEAD"], cwd=path)
            prefix = "refs/remotes/origin/"
        if status or not lines:
            return None
        ref = lines[0].strip()
        return ref[len(prefix):] if ref.startswith(prefix) else None

    # Mirror

    def update_mirror(self):
        """ Fetches into the shared mirror and compacts it when it is due.

        :returns: bool -- False if the update failed and the failure was ignored
        :raises: SyncFailure unless git_ignore_mirror_failure is set
        """
        if not self.use_mirror:
            return True
        mirrorlog = []
        try:
            if not os.path.isdir(self.mirror_path):
                log.info("Creating mirror of %s in %s" % (self.upstream, self.mirror_path))
                self._git_or_fail(["clone", "-q", "--mirror", self.upstream, self.mirror_path],
                                  mirrorlog, stage="Git-mirror")
                write_line(os.path.join(self.mirror_path, GC_MARKER), int(time.time()))
            else:
                self._git_or_fail(["--git-dir=%s" % self.mirror_path, "fetch", "-q", "--prune"],
                                  mirrorlog, stage="Git-mirror")
                self.gc_mirror(mirrorlog)
        except SyncFailure as e:
            if not self.conf.git_ignore_mirror_failure:
                raise
            log.warning("Ignoring mirror failure: %s" % e)
            return False
        return True

    def gc_mirror(self, mirrorlog=None, now=None):
        """ Runs git gc on the mirror if git_gc_hours passed since the last one.

        :returns: bool -- whether a garbage collection ran
        """
        now = now if now is not None else time.time()
        marker = os.path.join(self.mirror_path, GC_MARKER)
        last_gc = read_timestamp(marker)
        if last_gc is not None and now - last_gc < self.conf.git_gc_hours * 3600:
            return False
        log.info("Running garbage collection on %s" % self.mirror_path)
        self._git_or_fail(["--git-dir=%s" % self.mirror_path, "gc", "-q"],
                          mirrorlog if mirrorlog is not None else [], stage="Git-mirror")
        write_line(marker, int(now))
        return True

    # Working copy

    def checkout(self):
        gitlog = []
        self.update_mirror()

        if self.branch == "HEAD" and os.path.isdir(self.source_path):
            if not self.reconcile_default_branch():
                raise SyncFailure("Git-default-branch",
                                  "Renaming the default branch failed, see %s"
                                  % os.path.join(self.conf.build_root, RENAME_TRAIL), gitlog)

        if not self.working_copy.exists():
            if self.working_copy.is_linked:
                self._setup_workdir(gitlog)
            else:
                self._clone(gitlog)
        else:
            self._update(gitlog)

        self._check_clean(gitlog)
        head = self._git_or_fail(["rev-parse", "HEAD"], gitlog, cwd=self.source_path)[-1].strip()
        write_line(os.path.join(self.branch_root, HEAD_REVISION_FILE), head)
        log.info("%s is at %s" % (self.branch, head))
        return gitlog, head

    def _clone_into(self, path, branch, gitlog):
        cmd = ["clone", "-q"]
        if self.conf.git_reference:
            cmd.extend(["--reference", self.conf.git_reference])
        cmd.extend([self.clone_source, path])
        self._git_or_fail(cmd, gitlog)
        rbranch = branch
        if branch == "HEAD":
            status, lines = self._git(["symbolic-ref", "-q", "--short",
                                       "refs/remotes/origin/HEAD"], cwd=path)
            if not status and lines:
                rbranch = lines[0].strip().split("/", 1)[-1]
            else:
                rbranch = self.conf.git_default_branch
            if branch == self.branch:
                self._default_branch = rbranch
        self._create_tracking_branch("bf_%s" % branch, rbranch, gitlog, cwd=path)

    def _create_tracking_branch(self, local_branch, rbranch, gitlog, cwd, force=False):
        status, _ = self._git(["rev-parse", "--verify", "-q",
                               "refs/remotes/origin/%s" % rbranch], cwd=cwd)
        if status:
            raise SyncFailure("Git", "Branch %s no longer exists upstream" % rbranch, gitlog)
        cmd = ["checkout", "-q"]
        if force:
            cmd.append("-f")
        cmd.extend(["-b", local_branch, "--track", "origin/%s" % rbranch])
        self._git_or_fail(cmd, gitlog, cwd=cwd)

    def _clone(self, gitlog):
        if self.conf.git_use_workdirs and self.branch == self.conf.git_reference_branch:
            # Linked work-trees of other branches may be setting us up right now.
            with setup_lock(self.source_path):
                if not self.working_copy.exists():
                    self._clone_into(self.source_path, self.branch, gitlog)
                else:
                    self._update(gitlog)
        else:
            self._clone_into(self.source_path, self.branch, gitlog)

    def _setup_workdir(self, gitlog):
        reference = self.working_copy.reference
        reference_root = os.path.dirname(reference)
        if not os.path.isdir(reference_root):
            os.makedirs(reference_root)
        log.info("Setting up %s as a linked work-tree of %s" % (self.source_path, reference))
        with setup_lock(reference):
            if not os.path.isdir(os.path.join(reference, ".git")):
                self._clone_into(reference, self.conf.git_reference_branch, gitlog)
            gitdir = os.path.join(self.source_path, ".git")
            os.makedirs(gitdir)
            for item in LINKED_ITEMS:
                self._link_item(item)
            shutil.copy(os.path.join(reference, ".git", "HEAD"), os.path.join(gitdir, "HEAD"))
            self._git_or_fail(["fetch", "-q", "--prune", "origin"], gitlog, cwd=self.source_path)
            status, _ = self._git(["rev-parse", "--verify", "-q",
                                   "refs/heads/%s" % self.local_branch], cwd=self.source_path)
            if status:
                self._create_tracking_branch(self.local_branch, self.remote_branch, gitlog,
                                             cwd=self.source_path, force=True)
            else:
                self._git_or_fail(["checkout", "-q", "-f", self.local_branch], gitlog,
                                  cwd=self.source_path)

    def _link_item(self, item):
        target = os.path.join(self.working_copy.reference, ".git", item)
        if not os.path.lexists(target):
            return False
        link = os.path.join(self.source_path, ".git", item)
        parent = os.path.dirname(link)
        if not os.path.isdir(parent):
            os.makedirs(parent)
        os.symlink(target, link)
        return True

    def check_workdir_links(self, path=None, reference=None):
        """ Validates the symlinks of a linked work-tree.

        :param str path: the linked work-tree, defaults to our working copy
        :param str reference: its reference working copy
        :returns: dict mapping each shared item to a LinkStatus; items the
            reference does not have are left out
        """
        path = path or self.source_path
        reference = reference or self.working_copy.reference
        result = {}
        for item in LINKED_ITEMS:
            if not os.path.lexists(os.path.join(reference, ".git", item)):
                continue
            result[item] = check_link(os.path.join(path, ".git", item))
        return result

    def _repair_links(self, gitlog):
        broken = []
        for item, status in self.check_workdir_links().items():
            if status == LinkStatus.MISSING:
                log.warning("Restoring missing link %s in %s" % (item, self.source_path))
                self._link_item(item)
            elif status != LinkStatus.OK:
                broken.append("%s: %s\n" % (item, status.value))
        if broken:
            gitlog.extend(broken)
            raise SyncFailure("Git-workdir", "Linked work-tree %s is broken" % self.source_path,
                              gitlog)

    def _current_branch(self):
        status, lines = self._git(["symbolic-ref", "-q", "--short", "HEAD"], cwd=self.source_path)
        if status or not lines:
            return None
        return lines[0].strip()

    def _check_clean(self, gitlog):
        # Never clean up after the operator: whatever was left in the tree
        # may matter to them, so refuse to go on instead.
        lines = self._git_or_fail(["status", "--porcelain"], [], cwd=self.source_path)
        dirty = [line for line in lines if line.strip()]
        if dirty:
            gitlog.append("===========\n")
            gitlog.extend(dirty)
            raise SyncFailure("Git-Dirty", "Working copy %s has local modifications"
                              % self.source_path, gitlog)

    def _update(self, gitlog):
        if self.working_copy.is_linked:
            self._repair_links(gitlog)

        marker = os.path.join(self.source_path, ".git", WORKTREE_REMOVED_MARKER)
        if os.path.exists(marker):
            log.info("Restoring removed work-tree files of %s" % self.source_path)
            self._git_or_fail(["checkout", "-q", "-f", "HEAD", "--", "."], gitlog,
                              cwd=self.source_path)
            os.unlink(marker)

        self._check_clean(gitlog)
        current = self._current_branch()
        if current != self.local_branch:
            status, _ = self._git(["rev-parse", "--verify", "-q",
                                   "refs/heads/%s" % self.local_branch], cwd=self.source_path)
            if self.working_copy.is_linked and status:
                # The shared refs lost our branch, set it up again.
                log.warning("Recreating tracking branch %s in %s"
                            % (self.local_branch, self.source_path))
                self._git_or_fail(["fetch", "-q", "--prune", "origin"], gitlog,
                                  cwd=self.source_path)
                self._create_tracking_branch(self.local_branch, self.remote_branch, gitlog,
                                             cwd=self.source_path)
                return
            gitlog.append("Missing checked out branch %s: on %s\n" % (self.local_branch, current))
            raise MissingBranch(self.branch, "%s is not checked out in %s"
                                % (self.local_branch, self.source_path), gitlog)

        self._git_or_fail(["fetch", "-q", "--prune", "origin"], gitlog, cwd=self.source_path)
        status, _ = self._git(["rev-parse", "--verify", "-q",
                               "refs/remotes/origin/%s" % self.remote_branch],
                              cwd=self.source_path)
        if status:
            raise SyncFailure("Git", "Branch %s no longer exists upstream" % self.remote_branch,
                              gitlog)
        self._git_or_fail(["merge", "--ff-only", "-q", "origin/%s" % self.remote_branch],
                          gitlog, cwd=self.source_path)

    def reconcile_default_branch(self):
        """ Follows a rename of the upstream default branch.

        Re-points the mirror HEAD, the origin/HEAD of the working copy and
        the upstream of bf_HEAD, then checks the linked work-trees that share
        this working copy. Each finished step is appended to a trail file in
        the build root; the file is removed once every step succeeded. A
        leftover trail means a human has to finish the rename, so nothing is
        attempted while it exists.

        :returns: bool -- False if the rename could not be completed
        """
        trail = os.path.join(self.conf.build_root, RENAME_TRAIL)
        if os.path.exists(trail):
            log.error("Unfinished default branch rename, see %s" % trail)
            return False

        upstream = self.get_upstream_default_branch()
        local = self.local_default_branch()
        if not upstream or not local or upstream == local:
            if local:
                self._default_branch = local
            return True

        log.warning("Upstream default branch moved from %s to %s" % (local, upstream))
        steps = []
        if self.use_mirror:
            steps.append(("mirror-fetch", ["--git-dir=%s" % self.mirror_path,
                                           "fetch", "-q", "--prune"], None))
            steps.append(("mirror-head", ["--git-dir=%s" % self.mirror_path, "symbolic-ref",
                                          "HEAD", "refs/heads/%s" % upstream], None))
        steps.extend([
            ("fetch", ["fetch", "-q", "--prune", "origin"], self.source_path),
            ("remote-head", ["remote", "set-head", "origin", upstream], self.source_path),
            ("tracking", ["branch", "--set-upstream-to=origin/%s" % upstream, self.local_branch],
             self.source_path),
        ])

        with open(trail, "w") as f:
            f.write("renaming default branch %s to %s\n" % (local, upstream))
        for name, args, cwd in steps:
            status, lines = self._git(args, cwd=cwd)
            if status:
                with open(trail, "a") as f:
                    f.write("FAILED %s: git %s\n" % (name, " ".join(args)))
                    f.writelines(lines)
                log.error("Default branch rename failed at step %s" % name)
                return False
            with open(trail, "a") as f:
                f.write("done %s\n" % name)

        broken = self._dependent_workdir_problems()
        if broken:
            with open(trail, "a") as f:
                f.write("FAILED workdirs\n")
                f.writelines(broken)
            log.error("Default branch rename left broken linked work-trees")
            return False

        os.unlink(trail)
        self._default_branch = upstream
        log.info("Default branch is now %s" % upstream)
        return True

    def _dependent_workdir_problems(self):
        if not self.conf.git_use_workdirs or self.branch != self.conf.git_reference_branch:
            return []
        problems = []
        for name in sorted(os.listdir(self.conf.build_root)):
            path = os.path.join(self.conf.build_root, name, self.conf.source_dir)
            if name == self.branch or not os.path.isdir(os.path.join(path, ".git")):
                continue
            statuses = self.check_workdir_links(path=path, reference=self.source_path)
            if statuses.get("refs") in (None, LinkStatus.NOT_A_LINK):
                # a full clone, not linked to us
                continue
            for item, status in sorted(statuses.items()):
                if status == LinkStatus.MISSING:
                    os.symlink(os.path.join(self.source_path, ".git", item),
                               os.path.join(path, ".git", item))
                elif status != LinkStatus.OK:
                    problems.append("%s: %s is %s\n" % (path, item, status.value))
        return problems

    # Change detection

    def find_changed(self, last_run_snap, last_success_snap):
        lines = self._git_or_fail(["log", "-n", "1", "--pretty=format:%ct"], [],
                                  cwd=self.source_path)
        current_snap = int(lines[0].strip()) if lines else 0

        self.changed_since_last_run = {}
        self.changed_since_success = {}
        if last_run_snap:
            last_success_snap = last_success_snap or 0
            if 0 < last_success_snap < last_run_snap:
                self.changed_since_success = self._changed_between(
                    last_success_snap + 1, last_run_snap)
            self.changed_since_last_run = self._changed_between(last_run_snap + 1)
            for path in self.changed_since_last_run:
                self.changed_since_success.pop(path, None)

        return ChangeSet(
            current_snap,
            sorted(self.changed_since_last_run.items()),
            sorted(self.changed_since_success.items()),
        )

    def _changed_between(self, since, until=None):
        args = ["log", "--name-only", "--pretty=format:commit %H", "--since=@%d" % since]
        if until is not None:
            args.append("--until=@%d" % until)
        return parse_log(self._git_or_fail(args, [], cwd=self.source_path))

    def get_versions(self, files):
        versions = []
        for path in files:
            if path in self.changed_since_last_run:
                versions.append((path, self.changed_since_last_run[path]))
            elif path in self.changed_since_success:
                versions.append((path, self.changed_since_success[path]))
        return versions

    # Scratch state

    def copy_source(self, dest):
        shutil.copytree(self.source_path, dest, symlinks=True,
                        ignore=shutil.ignore_patterns(".git"))

    def cleanup(self):
        if os.path.isdir(self.source_path):
            self._git(["clean", "-dfxq"], cwd=self.source_path)

    def rm_worktree(self):
        """ Removes the checked out files, keeping the repository metadata.

        The next checkout restores them before updating.
        """
        if not os.path.isdir(os.path.join(self.source_path, ".git")):
            return
        for name in os.listdir(self.source_path):
            if name == ".git":
                continue
            path = os.path.join(self.source_path, name)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.unlink(path)
        write_line(os.path.join(self.source_path, ".git", WORKTREE_REMOVED_MARKER),
                   int(time.time()))


GenericSCM.register_backend_class(GitSCM)
