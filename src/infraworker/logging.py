"""Logging configuration for the infraworker CLI."""

import logging
import sys
from enum import IntEnum
from pathlib import Path
from typing import TextIO

from rich.console import Console
from rich.logging import RichHandler

FILE_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class LogLevel(IntEnum):
    """Log level enumeration."""

    QUIET = logging.WARNING
    NORMAL = logging.INFO
    VERBOSE = logging.DEBUG


def _level(verbosity: int, quiet: bool, debug: bool) -> LogLevel:
    if quiet:
        return LogLevel.QUIET
    if debug or verbosity >= 1:
        return LogLevel.VERBOSE
    return LogLevel.NORMAL


def configure_logging(
    verbosity: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    stream: TextIO | None = None,
    debug: bool = False,
    log_file: Path | None = None,
) -> Console:
    """Configure logging based on CLI options.

    Args:
        verbosity: Number of -v flags (0=normal, 1+=debug)
        quiet: Suppress non-error output (takes precedence over debug/verbosity)
        no_color: Disable colored output
        stream: Output stream for the console (defaults to stderr)
        debug: Enable debug logging with source paths
        log_file: Also append plain-text records here. A relaunched worker
            runs detached from any terminal, so this is its only log.

    Returns:
        Configured Rich console for output

    Note:
        Flag precedence: quiet > debug > verbosity. The worker loop logs
        one line per state transition at INFO, polling detail at DEBUG.
    """
    level = _level(verbosity, quiet, debug)

    console = Console(
        file=stream or sys.stderr,
        force_terminal=not no_color,
        no_color=no_color,
    )

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=debug or verbosity >= 2,
        )
    ]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(max(level, logging.INFO))

    return console
