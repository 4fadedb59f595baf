"""Logging setup for lancer.

Modules log through ``logging.getLogger(__name__)``; this module only
configures the ``lancer`` parent logger for the daemon and CLI:
a console handler always, plus a dated log file when ``log_dir`` is given.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "lancer"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[str, int] = "INFO", log_dir: Optional[Path] = None
) -> logging.Logger:
    """Configure the ``lancer`` logger. Safe to call more than once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_resolve_level(level))
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    if log_dir is not None and not any(
        isinstance(h, logging.FileHandler) for h in logger.handlers
    ):
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        file_handler = logging.FileHandler(log_dir / f"lancer-{date}.log")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Child of the ``lancer`` logger, e.g. ``get_logger("cli")`` -> ``lancer.cli``."""
    if name == LOGGER_NAME or name.startswith(f"{LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
