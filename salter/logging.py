"""Logging configuration for salter.

Logging is disabled by default (library behavior) and enabled by the CLI.
Diagnostics go to a rotating file under ``~/.salter``; the console only
shows warnings unless verbose output is requested.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from loguru import logger

from salter.constants import LOG_FILE

logger.disable("salter")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console level.
        file: Log file path. ``None`` disables the file sink.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g., "10 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "WARNING"
    file: Path | None = LOG_FILE
    console: bool = True
    rotation: str = "10 MB"
    retention: int = 5


def setup_logging(config: LogConfig) -> list[int]:
    """Enable salter logging and return the added handler ids."""
    logger.enable("salter")
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=config.level,
                format=CONSOLE_FORMAT,
                colorize=True,
                filter="salter",
            )
        )

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        handler_ids.append(
            logger.add(
                str(config.file),
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                diagnose=False,
                enqueue=True,
                filter="salter",
            )
        )

    logger.debug(f"--- {' '.join(sys.argv)} ---")
    logger.debug(f"Cwd: {Path.cwd()}")
    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("salter")


__all__ = [
    "LogConfig",
    "LogLevel",
    "setup_logging",
    "teardown_logging",
]
