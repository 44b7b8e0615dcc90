"""Shared logging helpers for the DCA executor."""

from __future__ import annotations

import logging
import os
from typing import Optional

from rich.logging import RichHandler

_DEFAULT_FORMAT = "[%(name)s] %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_ROOT_LOGGER = "dca_executor"


def _env_level(default: int) -> int:
    raw = os.getenv("DCA_EXECUTOR_LOG_LEVEL", "")
    if not raw:
        return default
    val = raw.strip().upper()
    if val.isdigit():
        return int(val)
    return getattr(logging, val, default)


def _rich_handler() -> RichHandler:
    handler = RichHandler(rich_tracebacks=True, show_path=False, log_time_format=_DEFAULT_DATEFMT)
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    return handler


def get_logger(name: str) -> logging.Logger:
    """Get a child of the package logger; handlers live on the package root."""
    if not name.startswith(_ROOT_LOGGER):
        name = f"{_ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None, level: Optional[int] = None) -> logging.Logger:
    """Configure console (rich) and optional file logging for a CLI invocation."""
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.handlers = []
    default = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(_env_level(default) if level is None else level)
    logger.addHandler(_rich_handler())

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s", datefmt=_DEFAULT_DATEFMT)
        )
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


__all__ = ["get_logger", "setup_logging"]
