"""
Logging setup for balance_guard.

Log records may carry reconciliation context through ``extra=``; the
formatter appends the known keys as ``key=value`` pairs.
"""

import logging
import os
from logging.config import dictConfig
from typing import Iterable, Optional, Sequence, Union

LOG_LEVEL_ENV = "BALANCE_GUARD_LOG_LEVEL"

_DEFAULT_EXTRA_KEYS = (
    "reading_id",
    "iteration",
    "state",
    "reason",
    "dry_run",
    "deleted_count",
)

_configured = False


class ContextualFormatter(logging.Formatter):
    """Formatter that appends selected ``extra`` attributes to the message."""

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        style: str = "%",
        extra_keys: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or _DEFAULT_EXTRA_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context_parts = []
        for key in self._extra_keys:
            value = getattr(record, key, None)
            if value is None:
                continue
            context_parts.append(f"{key}={value}")
        if context_parts:
            return f"{message} | {' '.join(context_parts)}"
        return message


def resolve_log_level(level: Union[str, int, None] = None, default: str = "INFO") -> Union[str, int]:
    """Pick the log level: explicit argument, then environment, then default."""
    if level is not None:
        return level.upper() if isinstance(level, str) else level
    value = os.getenv(LOG_LEVEL_ENV, "").strip()
    return value.upper() if value else default


def configure_logging(level: Union[str, int, None] = None, force: bool = False) -> None:
    """Configure package logging with contextual formatting.

    Args:
        level: Log level name or number; falls back to the environment
        force: Reconfigure even if logging was already configured
    """
    global _configured
    if _configured and not force:
        return

    log_level = resolve_log_level(level)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": ContextualFormatter,
                    "fmt": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "extra_keys": list(_DEFAULT_EXTRA_KEYS),
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "contextual",
                    "stream": "ext://sys.stderr",
                }
            },
            "loggers": {
                "balance_guard": {"handlers": ["default"], "level": log_level, "propagate": True},
            },
        }
    )
    _configured = True
