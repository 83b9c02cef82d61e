"""Logging setup for the generation orchestrator."""

import logging
import logging.config

from wardrobe_ai.config import settings


def build_logging_config(level: str = "INFO") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
            },
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
        "loggers": {
            "wardrobe_ai": {
                "level": level,
                "handlers": ["console"],
                "propagate": False,
            },
            # httpx logs every request at INFO; polling would flood the console
            "httpx": {"level": "WARNING"},
        },
    }


def setup_logging(level: str | None = None) -> None:
    logging.config.dictConfig(build_logging_config((level or settings.log_level).upper()))
