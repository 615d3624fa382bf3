"""Command line entry point."""

from __future__ import annotations

import asyncio

from pydantic_settings import CliApp, CliSubCommand, get_subcommand

from checkgate.command import CacheCommand, PlanCommand, RunCommand
from checkgate.core.config import State
from checkgate.core.errors import (
    ConfigError,
    ResolutionError,
    RunCancelledError,
)
from checkgate.core.log import logger

EXIT_CONFIG = 2
EXIT_CANCELLED = 130


class CliState(State):
    """State with CLI subcommand support.

    CliApp.run(CliState) parses arguments, loads config from
    YAML/env, instantiates CliState and calls cli_cmd(), which
    dispatches to the active subcommand.
    """

    run: CliSubCommand[RunCommand]
    plan: CliSubCommand[PlanCommand]
    cache: CliSubCommand[CacheCommand]

    def cli_cmd(self):
        """Dispatch to the active subcommand and exit with its code."""
        subcommand = get_subcommand(self)
        try:
            exit_code = asyncio.run(subcommand.run_workflow(self))
        except (ConfigError, ResolutionError) as e:
            logger.error(str(e))
            exit_code = EXIT_CONFIG
        except (RunCancelledError, KeyboardInterrupt):
            logger.warn("Gate run cancelled")
            exit_code = EXIT_CANCELLED
        finally:
            self.config.close()
        raise SystemExit(exit_code)


def main(argv: list[str] | None = None):
    try:
        CliApp.run(CliState, cli_args=argv)
    except ConfigError as e:
        logger.error(str(e))
        raise SystemExit(EXIT_CONFIG) from e


if __name__ == "__main__":
    main()
