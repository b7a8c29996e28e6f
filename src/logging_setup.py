"""Logging setup: console plus optional rotating file for each service."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 10
# Chatty third-party loggers kept at WARNING unless LOG_LEVEL=DEBUG
QUIET_LOGGERS = ("aiogram.event", "aiohttp.access")


def _clean_env_value(value: str | None, default: str) -> str:
    if value is None:
        return default
    return value.strip().strip('"').strip("'") or default


def _parse_int(value: str | None, default: int) -> int:
    cleaned = _clean_env_value(value, "")
    if not cleaned:
        return default
    try:
        return int(cleaned)
    except ValueError:
        return default


def _build_file_handler(service_name: str) -> RotatingFileHandler | None:
    """Rotating file handler under LOG_DIR; None when LOG_DIR is not set."""
    log_dir = _clean_env_value(os.getenv("LOG_DIR"), "")
    if not log_dir:
        return None
    log_file_name = _clean_env_value(os.getenv("LOG_FILE_NAME"), f"{service_name}.log")
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        Path(log_dir) / log_file_name,
        maxBytes=_parse_int(os.getenv("LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backupCount=_parse_int(os.getenv("LOG_BACKUP_COUNT"), DEFAULT_LOG_BACKUP_COUNT),
        encoding="utf-8",
    )


def configure_logging(service_name: str) -> None:
    """Configure the root logger for console + rotating file output."""
    level_name = _clean_env_value(os.getenv("LOG_LEVEL"), DEFAULT_LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error: OSError | None = None
    try:
        file_handler = _build_file_handler(service_name)
    except OSError as error:
        file_handler = None
        file_error = error
    if file_handler is not None:
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if file_error is not None:
        # The service keeps running on console logging only.
        logging.getLogger(__name__).warning(
            "File logging disabled for %s: %s",
            service_name,
            file_error,
        )
