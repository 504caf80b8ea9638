"""Logging configuration for kitescale.

Structured logging via loguru. Modules bind a component and log through
the shared logger; the CLI calls ``setup_logging`` once at startup.

Example:
    from loguru import logger

    log = logger.bind(component="inventory")
    log.info("Counted {n} workers in {zone}", n=3, zone="us-west1-b")
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]

# loguru's built-in levels; anything else makes logger.add raise.
LOG_LEVELS: tuple[str, ...] = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

_CONTEXT_KEYS = ("component", "queue", "zone", "instance")


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level>"
    "<dim>{extra[_ctx]}</dim> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Optional log file path; the file always receives DEBUG and up.
        rotation: File rotation policy. Defaults to "50 MB".
        retention: Number of old log files to keep. Defaults to 10.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Replace loguru's default sink with the kitescale sinks.

    Returns the handler IDs that were added.
    """
    logger.remove()
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))

    handler_ids = [
        logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
        ),
    ]

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
        ))

    return handler_ids
