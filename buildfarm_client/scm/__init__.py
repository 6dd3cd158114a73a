# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

from __future__ import absolute_import

from buildfarm_client.scm.base import (  # noqa
    FULL, LINKED, ChangeSet, GenericSCM, LinkStatus, WorkingCopy, check_link)
# Importing the backends registers them.
from buildfarm_client.scm.git import GitSCM  # noqa
from buildfarm_client.scm.cvs import CVSSCM  # noqa


def SCM(conf, branch_root, branch):
    """ Returns the synchronizer of `branch` for the configured backend. """
    return GenericSCM.create(conf, branch_root, branch)
