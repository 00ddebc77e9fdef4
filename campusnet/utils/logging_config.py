import os
import logging
from logging.config import dictConfig

from campusnet.utils.env_helper import env_bool

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
JSON_FORMAT = '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'


def setup_logging(level: str = None, json_logs: bool = None):
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = env_bool("LOG_JSON", default=False)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": LOG_FORMAT,
                },
                "json": {  # structured logs for prod
                    "format": JSON_FORMAT,
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_logs else "default",
                },
            },
            "root": {
                "level": level,
                "handlers": ["console"],
            },
            "loggers": {
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
    logging.getLogger(__name__).debug(f"logging_configured level={level} json={json_logs}")
