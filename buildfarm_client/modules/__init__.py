# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Step modules shipped with the client, loadable by their short name."""
