"""Logging setup shared by the CLI, the runner and per-job workers."""

from __future__ import annotations

import logging.config
from typing import Any

from jobqueue.config import LoggingSettings

LOG_FORMAT = "%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def build_logging_config(settings: LoggingSettings) -> dict[str, Any]:
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": settings.level,
            "formatter": "text",
            "stream": "ext://sys.stderr",
        },
    }
    if settings.log_file is not None:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "level": settings.level,
            "formatter": "text",
            "filename": str(settings.log_file),
            "encoding": "utf-8",
        }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "text": {"format": LOG_FORMAT, "datefmt": DATE_FORMAT},
        },
        "handlers": handlers,
        "loggers": {
            "alembic": {"level": "WARNING"},
        },
        "root": {
            "level": settings.level,
            "handlers": list(handlers),
        },
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Apply logging configuration once per process."""

    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config(settings))
