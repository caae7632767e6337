import logging.config
import sys

from topup.utils.config import settings


def configure_logging(level: str | None = None) -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "console",
                    "stream": sys.stdout,
                },
            },
            "loggers": {
                "topup": {"handlers": ["console"], "level": (level or settings.log_level).upper(), "propagate": False},
            },
            "root": {"handlers": ["console"], "level": "WARNING"},
        }
    )
