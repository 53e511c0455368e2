"""Loguru sink setup shared by the CLI entrypoints and the service."""
from __future__ import annotations

import sys
from typing import Optional

from loguru import logger

from .config import LoggingSettings

_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <level>{message}</level>"


def configure_logging(cfg: Optional[LoggingSettings] = None) -> None:
    cfg = cfg or LoggingSettings()
    logger.remove()
    if cfg.serialize:
        logger.add(sys.stderr, level=cfg.level.upper(), serialize=True, enqueue=True)
    else:
        logger.add(sys.stderr, level=cfg.level.upper(), format=_FORMAT, colorize=True, enqueue=True)
    if cfg.file:
        logger.add(cfg.file, level=cfg.level.upper(), rotation=cfg.rotation, serialize=cfg.serialize, enqueue=True)
    logger.debug(f"[Logging] configured level={cfg.level} serialize={cfg.serialize} file={cfg.file}")


__all__ = ["configure_logging"]
