# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""The stage hook registry."""

from __future__ import absolute_import
import logging

from buildfarm_client.pipeline.stages import STAGES, method_name

log = logging.getLogger(__name__)


class HookRegistry(object):
    """
    Handlers attached to the stages of one branch run.

    Handlers of a stage run in registration order. There is no failure
    isolation: the first handler raising an exception stops the dispatch,
    and the caller is expected to abandon the run.
    """

    def __init__(self):
        self._hooks = dict((stage, []) for stage in STAGES)

    def register(self, stage, handler, owner):
        if stage not in self._hooks:
            raise ValueError("Unknown stage %r" % stage)
        self._hooks[stage].append((handler, owner))

    def register_module(self, owner):
        """ Attaches the stage methods of a step module to every stage. """
        for stage in STAGES:
            self.register(stage, getattr(owner, method_name(stage)), owner)

    def hooks(self, stage):
        return list(self._hooks[stage])

    def owners(self):
        """ Every owner that registered a hook, in registration order. """
        seen = []
        for stage in STAGES:
            for _, owner in self._hooks[stage]:
                if not any(owner is x for x in seen):
                    seen.append(owner)
        return seen

    def dispatch(self, stage, *args):
        if stage not in self._hooks:
            raise ValueError("Unknown stage %r" % stage)
        for handler, owner in self._hooks[stage]:
            log.debug("Running %s hook of %r" % (stage, owner))
            handler(*args)
