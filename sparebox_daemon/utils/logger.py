"""
Logger factory for the daemon.
All module loggers hang off the "sparebox" logger; setup_logging() wires
console + RotatingFileHandler (10MB, 3 backups) onto it once at startup.
"""
from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

ROOT_LOGGER = "sparebox"

_FORMAT = logging.Formatter(
    fmt="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(level: str = "INFO", log_dir: Path | str | None = None) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger  # already configured

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(_FORMAT)
    logger.addHandler(ch)

    # File handler
    if log_dir:
        log_dir = Path(log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            filename=log_dir / "daemon.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        fh.setFormatter(_FORMAT)
        logger.addHandler(fh)

    logger.propagate = False
    return logger
