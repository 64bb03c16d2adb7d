"""Logging configuration for verskit.

Structured logging via loguru. Logging is disabled by default (library
behavior) and enabled by ``setup_logging``.

Example:
    from verskit.logging import LogConfig, setup_logging, teardown_logging

    handlers = setup_logging(LogConfig(level="DEBUG", file="verskit.log"))
    ...
    teardown_logging(handlers)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal

from loguru import logger

logger.disable("verskit")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} | {extra} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum log level for the console.
        file: Path to log file. If provided, logs are written to this file.
        console: Whether to log to stderr. Defaults to True.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig | None = None) -> list[int]:
    """Enable verskit logging and return handler IDs for ``teardown_logging``."""
    config = config or LogConfig()
    logger.enable("verskit")
    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter=_verskit_only,
        )
        handler_ids.append(hid)

    if config.file:
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,  # tracebacks must not expose key material
            enqueue=True,
            filter=_verskit_only,
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("verskit")


def _verskit_only(record: dict) -> bool:
    record["extra"].setdefault("component", record["name"])
    return record["name"].startswith("verskit")
