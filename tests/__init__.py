# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import os
import subprocess as sp

from buildfarm_client.common import config

# Commit times in tests are offsets from here; git only reads bare numbers
# this large as epoch seconds.
T0 = 1600000000

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Buildfarm Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Buildfarm Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def make_conf(build_root, **items):
    values = {
        "animal": "testanimal",
        "build_root": build_root,
        "scm": "git",
        "nosend": True,
        "branches_to_build": ["HEAD"],
    }
    values.update(items)
    return config.from_dict(values)


def git(args, cwd, date=None):
    """ Runs git for test setup, failing the test when git fails. """
    env = dict(os.environ)
    env.update(GIT_ENV)
    if date is not None:
        env["GIT_AUTHOR_DATE"] = "%d +0000" % date
        env["GIT_COMMITTER_DATE"] = "%d +0000" % date
    proc = sp.Popen(["git"] + list(args), cwd=cwd, env=env,
                    stdout=sp.PIPE, stderr=sp.STDOUT, universal_newlines=True)
    output, _ = proc.communicate()
    assert proc.returncode == 0, "git %s failed: %s" % (" ".join(args), output)
    return output


def commit(repo, files, date, message="change"):
    """ Writes `files` (name to content) into `repo` and commits them at `date`. """
    for name, content in files.items():
        path = os.path.join(repo, name)
        if not os.path.isdir(os.path.dirname(path)):
            os.makedirs(os.path.dirname(path))
        with open(path, "w") as f:
            f.write(content)
    git(["add", "-A"], repo)
    git(["commit", "-q", "-m", message], repo, date=date)
    return git(["rev-parse", "HEAD"], repo).strip()


def make_upstream(path, date=T0 + 500):
    """ Creates an upstream repository with a master branch and one commit. """
    os.makedirs(path)
    git(["init", "-q"], path)
    git(["symbolic-ref", "HEAD", "refs/heads/master"], path)
    commit(path, {"README": "upstream\n"}, date, "initial")
    return path


def head_of(repo, ref="HEAD"):
    return git(["rev-parse", ref], repo).strip()
