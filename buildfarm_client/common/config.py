# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""Configuration handler functions."""

from __future__ import absolute_import
import importlib.util
import os
import re

from buildfarm_client.common import logger
from buildfarm_client.common.errors import ConfigError

SUPPORTED_SCMS = ("git", "cvs")
SUPPORTED_CVS_METHODS = ("export", "update")

# Items that can not be changed from the command line.
PROTECTED_ITEMS = ("branches_to_build", "global_lock_dir")


def asbool(value):
    """ Cast config values to boolean. """
    return str(value).lower() in ["y", "yes", "t", "true", "1", "on"]


def from_file(filename, section=None):
    """ Create the configuration instance from a Python configuration file.

    The file defines one class per configuration section, just like
    conf/config.py. The section is picked by the `section` argument, then by
    the BUILDFARM_CONFIG_SECTION environment variable, and defaults to
    ProdConfiguration. Every upper case attribute of the section becomes a
    configuration item with a lower case name.

    :param str filename: path to the configuration file
    :param str section: name of the configuration class to use
    :returns: Config
    :raises: ConfigError
    """
    if not os.path.isfile(filename):
        raise ConfigError("Configuration file %s does not exist" % filename)

    spec = importlib.util.spec_from_file_location("buildfarm_client_conf", filename)
    config_module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(config_module)
    except Exception as e:
        raise ConfigError("Cannot load configuration file %s: %s" % (filename, e))

    section = section or os.environ.get("BUILDFARM_CONFIG_SECTION", "ProdConfiguration")
    config_section = getattr(config_module, section, None)
    if config_section is None:
        raise ConfigError("Configuration section %s not found in %s" % (section, filename))

    values = {}
    for key in dir(config_section):
        if key.startswith("_") or not key.isupper():
            continue
        values[key] = getattr(config_section, key)
    conf = from_dict(values)
    conf.set_item("config_file", os.path.abspath(filename))
    return conf


def config_set(conf, settings):
    """ Apply command line "key=value" settings to `conf`. """
    conf.apply_overrides(settings)
    return conf


def from_dict(values):
    """ Create the configuration instance from a mapping of item names """
    conf = Config()
    for key, value in values.items():
        conf.set_item(key.lower(), value)
    return conf


class Config(object):
    """Class representing the build farm client configuration."""
    _defaults = {
        "animal": {
            "type": str,
            "default": "",
            "desc": "Name of this build host as registered with the collector."},
        "build_root": {
            "type": str,
            "default": "",
            "desc": "Absolute path of the directory holding one subdirectory per branch."},
        "global_lock_dir": {
            "type": str,
            "default": "",
            "desc": "Directory for the global and parallel run locks, "
                    "defaults to build_root."},
        "scm": {
            "type": str,
            "default": "git",
            "desc": "Version control backend, git or cvs."},
        "scmrepo": {
            "type": str,
            "default": "",
            "desc": "Upstream repository."},
        "scm_url": {
            "type": str,
            "default": "",
            "desc": "Web URL of the repository, reported so commits can be linked."},
        "source_dir": {
            "type": str,
            "default": "source",
            "desc": "Name of the working copy directory inside the branch root."},
        "git_reference": {
            "type": None,
            "default": None,
            "desc": "Repository passed to git clone --reference."},
        "git_keep_mirror": {
            "type": bool,
            "default": False,
            "desc": "Keep a shared mirror of the upstream repository in the build root."},
        "git_ignore_mirror_failure": {
            "type": bool,
            "default": True,
            "desc": "Only warn when the mirror can not be updated."},
        "git_use_workdirs": {
            "type": bool,
            "default": False,
            "desc": "Create branch working copies as linked work-trees of the "
                    "reference branch working copy."},
        "git_reference_branch": {
            "type": str,
            "default": "HEAD",
            "desc": "Branch whose working copy linked work-trees share storage with."},
        "git_gc_hours": {
            "type": int,
            "default": 7 * 24,
            "desc": "Minimum number of hours between garbage collections of the mirror."},
        "git_default_branch": {
            "type": str,
            "default": "master",
            "desc": "Upstream branch tracked by the HEAD branch, until upstream says otherwise."},
        "git_rm_worktrees": {
            "type": bool,
            "default": False,
            "desc": "Remove the checked out files of a working copy after each run."},
        "scm_timeout_secs": {
            "type": int,
            "default": 0,
            "desc": "Kill the whole run if synchronization takes longer, 0 disables."},
        "cvsmethod": {
            "type": str,
            "default": "update",
            "desc": "CVS checkout method, export or update."},
        "cvs_module": {
            "type": str,
            "default": "pgsql",
            "desc": "CVS module holding the sources."},
        "branches_to_build": {
            "type": None,
            "default": None,
            "desc": "List of branches, a keyword (ALL, STABLE, HEAD_PLUS_LATEST[N]) "
                    "or a regular expression matched against upstream branches."},
        "branches_of_interest_url": {
            "type": str,
            "default": "",
            "desc": "URL of the branches of interest list, derived from target "
                    "when empty."},
        "target": {
            "type": str,
            "default": "",
            "desc": "URL of the result collector."},
        "force_every": {
            "type": None,
            "default": None,
            "desc": "Heartbeat in hours after which a run happens without changes; "
                    "a number or a per branch mapping."},
        "force_branches": {
            "type": list,
            "default": [],
            "desc": "Branches that run even when they are up to date."},
        "throttle": {
            "type": None,
            "default": {},
            "desc": "Throttle rules keyed by branch name, !RECENT, !HEAD or ALL."},
        "throttle_recent_count": {
            "type": int,
            "default": 2,
            "desc": "Number of newest branches (HEAD included) that count as recent."},
        "max_parallel": {
            "type": int,
            "default": 0,
            "desc": "Maximum number of branches building at the same time, "
                    "0 runs them one after another."},
        "stagger_seconds": {
            "type": int,
            "default": 0,
            "desc": "Additional delay between parallel launches, in seconds."},
        "modules": {
            "type": list,
            "default": [],
            "desc": "Step modules to load, in registration order."},
        "stage_commands": {
            "type": None,
            "default": {},
            "desc": "Shell commands per stage, used by the commands module."},
        "locales": {
            "type": list,
            "default": ["C"],
            "desc": "Locales the installcheck and locale-end stages run for."},
        "build_env": {
            "type": None,
            "default": {},
            "desc": "Environment variables set for the branch run."},
        "trigger_exclude": {
            "type": None,
            "default": None,
            "desc": "Regular expression of changed files that do not trigger a run."},
        "trigger_include": {
            "type": None,
            "default": None,
            "desc": "Regular expression; when set, only changed files matching it trigger a run."},
        "skip_steps": {
            "type": list,
            "default": [],
            "desc": "Steps not to run."},
        "only_steps": {
            "type": list,
            "default": [],
            "desc": "Steps to run, all others are skipped."},
        "keep_error_builds": {
            "type": bool,
            "default": False,
            "desc": "Keep failed build trees under a timestamped name."},
        "keepall": {
            "type": bool,
            "default": False,
            "desc": "Do not remove the build tree after a failure."},
        "nosend": {
            "type": bool,
            "default": False,
            "desc": "Do not send results to the collector."},
        "nostatus": {
            "type": bool,
            "default": False,
            "desc": "Do not update the status files."},
        "forcerun": {
            "type": bool,
            "default": False,
            "desc": "Run even if nothing changed."},
        "upload_command": {
            "type": str,
            "default": "",
            "desc": "Command run with the log directory as argument to upload a report."},
        "verbose": {
            "type": int,
            "default": 0,
            "desc": "Verbosity, 2 or more dumps stage logs to the log."},
        "log_backend": {
            "type": str,
            "default": None,
            "desc": "Log backend"},
        "log_file": {
            "type": str,
            "default": "",
            "desc": "Path to log file"},
        "log_level": {
            "type": str,
            "default": 0,
            "desc": "Log level"},
    }

    def __init__(self):
        """Initialize the Config object with defaults."""

        for name, values in self._defaults.items():
            self.set_item(name, values["default"])

    def set_item(self, key, value):
        if key in ("set_item", "apply_overrides") or key.startswith("_"):
            raise ConfigError("Configuration item's name is not allowed: %s" % key)

        # customized check & set if there's a corresponding handler
        setifok_func = "_setifok_{}".format(key)
        if hasattr(self, setifok_func):
            getattr(self, setifok_func)(value)
            return

        # managed/registered configuration items
        if key in self._defaults:
            # type conversion for configuration item
            convert = self._defaults[key]["type"]
            if convert is bool and isinstance(value, str):
                setattr(self, key, asbool(value))
            elif convert in [bool, int, list, str]:
                try:
                    setattr(self, key, convert(value))
                except (TypeError, ValueError):
                    raise ConfigError("Configuration value conversion failed for name: %s" % key)
            # if type is None, do not perform any conversion
            elif convert is None:
                setattr(self, key, value)
            # unknown type/unsupported conversion
            else:
                raise ConfigError(
                    "Unsupported type %s for configuration item name: %s" % (convert, key))
        # passthrough for unmanaged configuration items
        else:
            setattr(self, key, value)

    def apply_overrides(self, settings):
        """ Apply "key=value" and "key+=value" settings from the command line.

        Scalars can only be replaced. Lists are replaced by a comma separated
        value or appended to with +=. Mappings take "key.subkey=value".
        """
        for setting in settings:
            match = re.match(r"^([A-Za-z_]+)(?:\.([A-Za-z_]+))?(\+?=)(.*)$", setting)
            if not match:
                raise ConfigError("Invalid setting: %s" % setting)
            key, subkey, op, value = match.groups()
            if key in PROTECTED_ITEMS:
                raise ConfigError("Unsupported setting via command line: %s" % key)
            if key not in self._defaults:
                raise ConfigError("Invalid config key: %s" % key)

            current = getattr(self, key)
            if isinstance(current, list):
                if subkey:
                    raise ConfigError("Invalid setting: %s" % setting)
                if op == "+=":
                    self.set_item(key, current + [value])
                else:
                    self.set_item(key, value.split(","))
            elif isinstance(current, dict):
                if not subkey or op != "=":
                    raise ConfigError("Invalid setting: %s" % setting)
                updated = dict(current)
                updated[subkey] = value
                self.set_item(key, updated)
            else:
                if subkey or op != "=":
                    raise ConfigError("Invalid setting: %s" % setting)
                self.set_item(key, value)

    @property
    def lock_dir(self):
        """ The directory holding the global and parallel run locks. """
        return self.global_lock_dir or self.build_root

    def force_every_for(self, branch):
        """ Returns the heartbeat in hours for `branch`, or None. """
        if isinstance(self.force_every, dict):
            return self.force_every.get(branch, self.force_every.get("default"))
        return self.force_every

    def _setifok_scm(self, s):
        s = str(s).lower()
        if s not in SUPPORTED_SCMS:
            raise ConfigError("Unsupported SCM: %s." % s)
        self.scm = s

    def _setifok_cvsmethod(self, s):
        s = str(s)
        if s not in SUPPORTED_CVS_METHODS:
            raise ConfigError("Unsupported CVS method: %s." % s)
        self.cvsmethod = s

    def _setifok_build_root(self, s):
        s = str(s)
        if s and not os.path.isabs(s):
            raise ConfigError("build_root %s is not absolute" % s)
        self.build_root = s.rstrip("/") if s != "/" else s

    def _setifok_max_parallel(self, i):
        i = int(i)
        if i < 0:
            raise ConfigError("max_parallel must be >= 0")
        self.max_parallel = i

    def _setifok_stagger_seconds(self, i):
        i = int(i)
        if i < 0:
            raise ConfigError("stagger_seconds must be >= 0")
        self.stagger_seconds = i

    def _setifok_git_gc_hours(self, i):
        i = int(i)
        if i < 0:
            raise ConfigError("git_gc_hours must be >= 0")
        self.git_gc_hours = i

    def _setifok_throttle(self, d):
        if d is None:
            d = {}
        if not isinstance(d, dict):
            raise ConfigError("throttle needs to be a dict.")
        for name, rule in d.items():
            if not isinstance(rule, dict):
                raise ConfigError("throttle rule for %s needs to be a dict." % name)
            unknown = set(rule) - set(["min_hours_since", "allowed_hours"])
            if unknown:
                raise ConfigError("Unknown throttle settings for %s: %s"
                                  % (name, ", ".join(sorted(unknown))))
        self.throttle = d

    def _setifok_skip_steps(self, value):
        self.skip_steps = self._to_steps(value)

    def _setifok_only_steps(self, value):
        self.only_steps = self._to_steps(value)

    @staticmethod
    def _to_steps(value):
        if not value:
            return []
        if isinstance(value, str):
            return value.replace(",", " ").split()
        return [str(x) for x in value]

    def _setifok_modules(self, l):
        if not isinstance(l, (list, tuple)):
            raise ConfigError("modules needs to be a list.")
        self.modules = [str(x) for x in l]

    def _setifok_log_backend(self, s):
        if s is None:
            self.log_backend = "console"
        elif s not in logger.supported_log_backends():
            raise ConfigError("Unsupported log backend")
        else:
            self.log_backend = str(s)

    def _setifok_log_file(self, s):
        if s is None:
            self.log_file = ""
        else:
            self.log_file = str(s)

    def _setifok_log_level(self, s):
        level = str(s).lower() if s else ""
        try:
            self.log_level = logger.str_to_log_level(level)
        except KeyError:
            raise ConfigError("Unsupported log level: %s" % s)
