from __future__ import annotations

import logging.config

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    normalized = level.upper().strip() or "INFO"
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {"format": _LOG_FORMAT},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                "safebackup": {
                    "handlers": ["console"],
                    "level": normalized,
                    "propagate": False,
                },
            },
            "root": {"handlers": ["console"], "level": "WARNING"},
        }
    )
