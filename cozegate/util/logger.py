"""Unified logger for the whole project."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from cozegate.config.settings import settings


LOG_FILE_NAME = "cozegate.log"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 10
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def _normalize_level(raw: str) -> int:
    return _LEVELS.get(str(raw or "INFO").strip().upper(), logging.INFO)


def _file_handler(log_dir: str, level: int, formatter: logging.Formatter) -> logging.Handler | None:
    """空 log_dir 或目录不可写（只读容器等）时返回 None，只输出到 stderr。"""
    if not log_dir.strip():
        return None
    try:
        directory = Path(log_dir.strip())
        directory.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            directory / LOG_FILE_NAME,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError:
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _build_logger() -> logging.Logger:
    configured_logger = logging.getLogger("cozegate")
    if configured_logger.handlers:
        return configured_logger

    level = _normalize_level(settings.log_level)
    configured_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    configured_logger.addHandler(stream_handler)

    file_handler = _file_handler(settings.log_dir, level, formatter)
    if file_handler is not None:
        configured_logger.addHandler(file_handler)

    # httpx 每个上游请求都会打一条 INFO，非 DEBUG 时压掉
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)

    configured_logger.propagate = False
    return configured_logger


logger = _build_logger()
