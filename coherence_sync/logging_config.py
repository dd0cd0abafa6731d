"""Logging for the coherence sync CLI and API server.

Every component logs under one of three roots: "coherence" (engine,
session, sync, recovery), "storage" and "api". setup_logging() gives
each root the same rotating file and a WARNING+ console stream, so
component loggers such as "coherence.sync" need no handlers of their own.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from . import config as cfg

ROOTS = ("coherence", "storage", "api")

FORMAT = logging.Formatter(
    "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_handlers = []


def resolve_level(level: Union[int, str, None]) -> int:
    """Accept logging constants or names ("debug", "WARNING")."""
    if level is None:
        level = cfg.LOG_LEVEL
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logging(
    level: Union[int, str, None] = None,
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """Attach file and console handlers to every root. Safe to call twice."""
    level = resolve_level(level)
    for name in ROOTS:
        logging.getLogger(name).setLevel(level)
    if _handlers:
        return logging.getLogger(ROOTS[0])

    path = Path(log_file) if log_file else cfg.LOG_DIR / cfg.LOG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        path, maxBytes=cfg.LOG_MAX_BYTES, backupCount=cfg.LOG_BACKUPS
    )
    console = logging.StreamHandler()
    console.setLevel(logging.WARNING)
    for handler in (file_handler, console):
        handler.setFormatter(FORMAT)
        _handlers.append(handler)

    for name in ROOTS:
        logger = logging.getLogger(name)
        logger.propagate = False
        for handler in _handlers:
            logger.addHandler(handler)

    # Request logs from the recovery client are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return logging.getLogger(ROOTS[0])
