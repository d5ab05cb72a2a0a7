"""
Logging setup: console plus daily access/error files.

Call setup_logging() once at startup (main). Modules log through
logging.getLogger(__name__); failures that need severity/category tags go
through errors.log_error.
"""
import logging.config
import os

from config import LOG_DIR, LOG_LEVEL


def build_logging_config(log_dir: str = LOG_DIR, level: str = LOG_LEVEL) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "verbose": {
                "format": "[{asctime}] {levelname} {name} - {message}",
                "style": "{",
            },
        },
        "handlers": {
            "access_file": {
                "level": "INFO",
                "class": "logging.handlers.TimedRotatingFileHandler",
                "filename": os.path.join(log_dir, "access.log"),
                "when": "midnight",
                "backupCount": 14,
                "formatter": "verbose",
                "encoding": "utf-8",
            },
            "error_file": {
                "level": "WARNING",
                "class": "logging.handlers.TimedRotatingFileHandler",
                "filename": os.path.join(log_dir, "error.log"),
                "when": "midnight",
                "backupCount": 30,
                "formatter": "verbose",
                "encoding": "utf-8",
            },
            "console": {
                "level": level,
                "class": "logging.StreamHandler",
                "formatter": "verbose",
            },
        },
        "root": {
            "handlers": ["access_file", "error_file", "console"],
            "level": level,
        },
    }


def setup_logging(log_dir: str = LOG_DIR, level: str = LOG_LEVEL) -> None:
    os.makedirs(log_dir, exist_ok=True)
    logging.config.dictConfig(build_logging_config(log_dir, level))
