# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Command line interface.

    buildfarm run-branches --run-parallel
    buildfarm -v run-build REL_16_STABLE
"""

from __future__ import absolute_import
import logging
import os
import sys

import click

from buildfarm_client.common import config, logger
from buildfarm_client.common.errors import (
    ConfigError, CoordinationError, Interrupted, RunSkipped, StageFailure, SyncFailure)
from buildfarm_client.locks import global_lock
from buildfarm_client.scheduler import MODES, BuildRun, Runner, select_branches

log = logging.getLogger(__name__)

DEFAULT_CONFIG = "/etc/buildfarm-client/config.py"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_FATAL = 2


class CliContext(object):

    def __init__(self, conf, options):
        self.conf = conf
        # options passed on to the run-build children
        self.options = options


def load_config(config_file, section, settings, verbose, flags):
    conf = config.from_file(config_file, section)
    config.config_set(conf, settings)
    if verbose:
        conf.set_item("verbose", verbose)
    for name, value in flags.items():
        if value:
            conf.set_item(name, True)
    if not conf.log_level:
        level = "debug" if verbose > 2 else "info" if verbose else "warning"
        conf.set_item("log_level", level)
    return conf


def forwarded_options(config_file, section, settings, verbose, flags):
    options = ["--config", os.path.abspath(config_file)]
    if section:
        options.extend(["--section", section])
    for setting in settings:
        options.extend(["--set", setting])
    if verbose:
        options.append("-" + "v" * verbose)
    for name, value in sorted(flags.items()):
        if value:
            options.append("--" + name)
    return options


def exit_status(func, *args, **kwargs):
    """ Runs `func`, turning the outcome into a process exit status. """
    try:
        func(*args, **kwargs)
    except RunSkipped as e:
        log.info("%s" % e)
        return EXIT_OK
    except (StageFailure, SyncFailure, Interrupted) as e:
        log.error("%s" % e)
        return EXIT_FAILURE
    except (CoordinationError, ConfigError) as e:
        log.error("%s" % e)
        return EXIT_FATAL
    return EXIT_OK


@click.group()
@click.option("--config", "-c", "config_file", envvar="BUILDFARM_CONFIG",
              default=DEFAULT_CONFIG, show_default=True, help="Configuration file.")
@click.option("--section", envvar="BUILDFARM_CONFIG_SECTION",
              help="Configuration class to use, ProdConfiguration by default.")
@click.option("--set", "settings", multiple=True, metavar="KEY=VALUE",
              help="Override a configuration item; KEY+=VALUE appends to a list.")
@click.option("--verbose", "-v", count=True, help="More output, repeat for even more.")
@click.option("--nosend", is_flag=True, help="Do not send the results.")
@click.option("--nostatus", is_flag=True, help="Do not update the status files.")
@click.option("--keepall", is_flag=True, help="Keep the build tree after a failure.")
@click.option("--forcerun", "--force", "forcerun", is_flag=True,
              help="Run even if nothing changed.")
@click.pass_context
def cli(ctx, config_file, section, settings, verbose, nosend, nostatus, keepall, forcerun):
    """Build farm client."""
    flags = {"nosend": nosend, "nostatus": nostatus, "keepall": keepall, "forcerun": forcerun}
    try:
        conf = load_config(config_file, section, settings, verbose, flags)
    except ConfigError as e:
        click.echo("Error: %s" % e, err=True)
        ctx.exit(EXIT_FATAL)
    logger.init_logging(conf)
    ctx.obj = CliContext(conf, forwarded_options(config_file, section, settings, verbose, flags))


def _run_branches(conf, mode, options, branches):
    with global_lock(conf):
        selected = select_branches(conf, branches=list(branches) or None)
        if not selected:
            log.info("No branch needs a run")
            return
        Runner(conf, options).run(mode, selected)


@cli.command("run-branches")
@click.option("--run-all", "mode", flag_value="run-all", help="Run every branch in turn.")
@click.option("--run-one", "mode", flag_value="run-one",
              help="Run the stalest branch that has something to do.")
@click.option("--run-parallel", "mode", flag_value="run-parallel",
              help="Run the branches concurrently, up to max_parallel at a time.")
@click.argument("branches", nargs=-1)
@click.pass_obj
def run_branches(obj, mode, branches):
    """Run the configured branches, or the BRANCHES given."""
    if mode not in MODES:
        raise click.UsageError("Need one of --run-all, --run-one and --run-parallel")
    sys.exit(exit_status(_run_branches, obj.conf, mode, obj.options, branches))


@cli.command("run-build")
@click.argument("branch", default="HEAD")
@click.pass_obj
def run_build(obj, branch):
    """Synchronize, build and test one BRANCH (HEAD by default)."""
    sys.exit(exit_status(BuildRun(obj.conf, branch).run))


def main():
    cli(prog_name="buildfarm")
