# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

from buildfarm_client.cli import main

if __name__ == "__main__":
    main()
