from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .config_manager import TorotatorSettings

# Normalized child-process levels produced by the log classifiers.
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(settings: TorotatorSettings) -> None:
    """Configure logging according to runtime settings."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    format_string = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    if settings.log_verbose:
        format_string = (
            "%(asctime)s %(levelname)s [%(name)s] "
            "%(process)d:%(threadName)s %(filename)s:%(lineno)d %(message)s"
        )
    logging.basicConfig(level=level, format=format_string)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return module-level logger helper."""

    return logging.getLogger(f"torotator.{name}" if name else "torotator")


def level_for(name: str) -> int:
    """Map a normalized child-process level to a logging level; unknown names log as INFO."""

    return _LEVELS.get(name, logging.INFO)
