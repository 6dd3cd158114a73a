# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Step modules and their loading."""

from __future__ import absolute_import
import importlib
import logging

from buildfarm_client.common.errors import ConfigError, StageFailure
from buildfarm_client.common.utils import time_str
from buildfarm_client.locks import resource_lock

log = logging.getLogger(__name__)

MODULE_PACKAGE = "buildfarm_client.modules"


class StepModule(object):
    """
    Base class of the step modules plugging into a branch run.

    Every stage method is a no-op here; a module overrides the ones it
    cares about. A module refusing to take part in a run returns None from
    setup().

    A module that touches resources shared between branches, and can not
    protect them with a resource lock, sets parallel_safe to False. Loading
    such a module disables parallel runs altogether.
    """

    name = None
    parallel_safe = True

    def __init__(self, build_root, branch, conf, build_dir):
        """
        :param str build_root: the directory of the branch
        :param str branch: the branch being built
        :param conf: instance of buildfarm_client.common.config.Config
        :param str build_dir: where the synchronized sources are built
        """
        self.build_root = build_root
        self.branch = branch
        self.conf = conf
        self.build_dir = build_dir

    def __repr__(self):
        return "<%s %s>" % (self.name or self.__class__.__name__, self.branch)

    @classmethod
    def setup(cls, build_root, branch, conf, build_dir):
        """ Returns the module instance for this run, or None to sit it out. """
        return cls(build_root, branch, conf, build_dir)

    def fail(self, stage, status, lines):
        """ Reports a failed stage, abandoning the branch run. """
        raise StageFailure(stage, status, lines)

    def resource_lock(self, name):
        return resource_lock(self.conf, name)

    def trace(self, message):
        if self.conf.verbose:
            log.info("%s%s %s" % (time_str(), message, self))

    def checkout(self, log_lines):
        pass

    def setup_target(self):
        pass

    def need_run(self, decision):
        pass

    def configure(self):
        pass

    def build(self):
        pass

    def check(self):
        pass

    def install(self):
        pass

    def installcheck(self, locale):
        pass

    def locale_end(self, locale):
        pass

    def cleanup(self):
        pass

    def on_abort(self):
        """ Called when the run is abandoned, to stop anything the module started. """


def load_module_class(name):
    """ Finds the step module class named in the modules setting.

    A short name such as "skeleton" refers to a module shipped in
    buildfarm_client.modules; a dotted name is imported as is. The imported
    module exposes its class as `module_class`.
    """
    dotted = name if "." in name else "%s.%s" % (MODULE_PACKAGE, name.lower())
    try:
        mod = importlib.import_module(dotted)
    except ImportError as e:
        raise ConfigError("Cannot load step module %s: %s" % (name, e))
    cls = getattr(mod, "module_class", None)
    if not isinstance(cls, type) or not issubclass(cls, StepModule):
        raise ConfigError("%s does not define a step module class" % dotted)
    return cls


def module_classes(conf):
    return [load_module_class(name) for name in conf.modules]


def parallel_unsafe_modules(conf):
    """ Names of the configured modules that forbid parallel runs. """
    return [name for name, cls in zip(conf.modules, module_classes(conf))
            if not cls.parallel_safe]


def setup_modules(conf, registry, build_root, branch, build_dir):
    """ Sets up the configured modules in order and registers their hooks.

    :returns: list of the module instances taking part in the run
    """
    instances = []
    for cls in module_classes(conf):
        instance = cls.setup(build_root, branch, conf, build_dir)
        if instance is None:
            log.debug("Module %s skipped branch %s" % (cls.__name__, branch))
            continue
        registry.register_module(instance)
        instances.append(instance)
    return instances
