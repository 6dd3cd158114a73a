# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Deciding which branches run.

branches_to_build is one of:

    ["HEAD", "REL_16_STABLE"]  an explicit list
    "ALL"                      the branches of interest published by the
                               collector
    "STABLE"                   the same without HEAD
    "HEAD_PLUS_LATEST"         HEAD and the newest stable branch
    "HEAD_PLUS_LATEST3"        HEAD and the three newest stable branches
    anything else              a regular expression matched against the
                               upstream branch names

Branches that are already up to date are dropped, and so are branches
held back by a throttle rule. Throttle rules are looked up by branch name
first, then "!RECENT" (any branch but the recent ones), "!HEAD" (any
branch but HEAD) and finally "ALL":

    THROTTLE = {
        "!RECENT": {"min_hours_since": 24},
        "HEAD": {"allowed_hours": [0, 6, 12, 18]},
    }
"""

from __future__ import absolute_import
import logging
import re
import time

import requests

from buildfarm_client.common.errors import ConfigError, CoordinationError
from buildfarm_client.scm import SCM
from buildfarm_client.state import BranchState, branch_root

log = logging.getLogger(__name__)

HEAD = "HEAD"
_latest_re = re.compile(r"^HEAD_PLUS_LATEST(\d*)$")

BOI_FILE = "branches_of_interest.txt"
BOI_TIMEOUT = 60

UP_TO_DATE = "up-to-date"
THROTTLED = "throttled"


def branches_of_interest_url(conf):
    if conf.branches_of_interest_url:
        return conf.branches_of_interest_url
    if not conf.target:
        raise ConfigError("Neither branches_of_interest_url nor target is set")
    base = re.sub(r"cgi-bin.*$", "", conf.target)
    if not base.endswith("/"):
        base += "/"
    return base + BOI_FILE


def fetch_branches_of_interest(conf):
    """ Fetches the branches the collector wants built, oldest first. """
    url = branches_of_interest_url(conf)
    log.debug("Fetching branches of interest from %s" % url)
    try:
        response = requests.get(url, timeout=BOI_TIMEOUT)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise CoordinationError("Cannot get the branches of interest from %s: %s" % (url, e))
    branches = []
    for line in response.text.splitlines():
        name = line.strip()
        if name and not name.startswith("#"):
            branches.append(normalize_branch(conf, name))
    return branches


def normalize_branch(conf, name):
    """ The upstream default branch is built as HEAD. """
    if name in ("master", conf.git_default_branch):
        return HEAD
    return name


def branch_sort_key(name):
    """ Orders branches oldest to newest; HEAD is the newest of all. """
    if name == HEAD:
        return (1, ())
    return (0, tuple(int(x) for x in re.findall(r"\d+", name)), name)


def recent_branches(conf, branches):
    """ HEAD and the newest branches, throttle_recent_count of them in all. """
    count = conf.throttle_recent_count
    ordered = sorted(set(branches) | set([HEAD]), key=branch_sort_key, reverse=True)
    return ordered[:count]


def resolve_branches(conf, upstream_branches=None):
    """ Turns branches_to_build into an ordered list of branch names.

    :param list upstream_branches: upstream branch names, looked up with
        the synchronizer when needed and not given
    :raises: ConfigError, CoordinationError
    """
    wanted = conf.branches_to_build
    if not wanted:
        raise ConfigError("No branches_to_build specified")

    if isinstance(wanted, (list, tuple)):
        branches = [str(x) for x in wanted]
    elif wanted == "ALL":
        branches = fetch_branches_of_interest(conf)
    elif wanted == "STABLE":
        branches = [x for x in fetch_branches_of_interest(conf) if x != HEAD]
    elif _latest_re.match(wanted):
        latest = int(_latest_re.match(wanted).group(1) or 1)
        interest = fetch_branches_of_interest(conf)
        stable = sorted([x for x in interest if x != HEAD], key=branch_sort_key)[-latest:]
        branches = [x for x in interest if x == HEAD or x in stable]
    else:
        try:
            pattern = re.compile(wanted)
        except re.error as e:
            raise ConfigError("Invalid branches_to_build pattern %r: %s" % (wanted, e))
        if upstream_branches is None:
            upstream_branches = SCM(conf, branch_root(conf, HEAD), HEAD).get_upstream_branches()
        if upstream_branches is None:
            raise CoordinationError("Cannot list the upstream branches")
        names = set(normalize_branch(conf, x) for x in upstream_branches)
        branches = sorted([x for x in names if pattern.fullmatch(x)], key=branch_sort_key)

    # drop duplicates, keeping the order
    seen = set()
    result = []
    for name in branches:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


def find_throttle_rule(conf, branch, recent):
    rules = conf.throttle or {}
    if branch in rules:
        return rules[branch]
    if "!RECENT" in rules and branch not in recent:
        return rules["!RECENT"]
    if "!HEAD" in rules and branch != HEAD:
        return rules["!HEAD"]
    return rules.get("ALL")


def _allowed_hours(value):
    if isinstance(value, str):
        value = [x for x in re.split(r"[\s,]+", value) if x]
    return set(int(x) for x in value)


def is_throttled(conf, branch, state, recent, now=None):
    """ Whether a throttle rule holds `branch` back at `now`. """
    rule = find_throttle_rule(conf, branch, recent)
    if not rule:
        return False
    now = now if now is not None else time.time()
    min_hours = rule.get("min_hours_since")
    if min_hours is not None:
        last = state.last_status
        if last and now - last < float(min_hours) * 3600:
            log.debug("%s ran less than %s hours ago" % (branch, min_hours))
            return True
    hours = rule.get("allowed_hours")
    if hours is not None:
        if time.localtime(now).tm_hour not in _allowed_hours(hours):
            log.debug("%s is not allowed to run at this hour" % branch)
            return True
    return False


def heartbeat_due(conf, branch, state, now):
    hours = conf.force_every_for(branch)
    last = state.last_status
    return bool(hours and last and last + float(hours) * 3600 < now)


def force_requested(conf, branch, state, now):
    """ Whether the up to date check is bypassed for `branch`. """
    if conf.forcerun or branch in conf.force_branches:
        return True
    if state.force_marker_exists():
        return True
    return heartbeat_due(conf, branch, state, now)


def is_up_to_date(conf, branch, state):
    """ Whether the upstream head is the one recorded by the last checkout. """
    local = state.head_revision
    if not local:
        return False
    upstream = SCM(conf, state.root, branch).get_upstream_head()
    return upstream is not None and upstream == local


def skip_reason(conf, branch, recent, now):
    state = BranchState(conf, branch)
    if not force_requested(conf, branch, state, now) and is_up_to_date(conf, branch, state):
        return UP_TO_DATE
    if is_throttled(conf, branch, state, recent, now):
        return THROTTLED
    return None


def select_branches(conf, branches=None, now=None):
    """ Resolves the configured branches and drops the ones that need no run.

    :param list branches: use these instead of branches_to_build
    :returns: list of branch names, in run order
    """
    now = now if now is not None else time.time()
    if branches is None:
        branches = resolve_branches(conf)
    recent = recent_branches(conf, branches)
    selected = []
    for branch in branches:
        reason = skip_reason(conf, branch, recent, now)
        if reason:
            log.info("Skipping %s: %s" % (branch, reason))
            continue
        selected.append(branch)
    return selected
