"""Shared logging helpers for the LP agent."""

import logging
import os
from typing import Dict, Optional

_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_loggers: Dict[str, logging.Logger] = {}
_configured_level: Optional[int] = None


def _env_level(default: int) -> int:
    raw = os.environ.get("LP_AGENT_LOG_LEVEL", "").strip().upper()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    return getattr(logging, raw, default)


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get or create a logger with standard formatting."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT))
        logger.addHandler(handler)
        logger.propagate = False
    if level is None:
        level = _configured_level if _configured_level is not None else _env_level(logging.INFO)
    logger.setLevel(level)
    _loggers[name] = logger
    return logger


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Apply CLI verbosity (and an optional log file) to every agent logger."""
    global _configured_level
    level = _env_level(logging.DEBUG if verbose else logging.INFO)
    _configured_level = level
    file_handler = None
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT))

    for logger in _loggers.values():
        logger.setLevel(level)
        if file_handler is not None:
            logger.addHandler(file_handler)
