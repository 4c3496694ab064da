"""Structured logging configuration using dictConfig."""
import logging
import logging.config
import sys
from typing import Dict, Any, Optional

from .settings import Settings, get_settings

# Third party loggers quietened to the library level
LIBRARY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "apscheduler", "httpx", "httpcore")

FORMATS = {
    "json": "%(asctime)s %(levelname)s {service} %(name)s %(message)s",
    "console": "%(asctime)s [{service}] [%(levelname)s] %(name)s: %(message)s",
}


def _logger(level: str) -> Dict[str, Any]:
    return {"level": level, "handlers": ["console"], "propagate": False}


def get_logging_config(service_name: Optional[str] = None, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Get logging configuration dictionary.

    The service name defaults to the configured app name. Production
    environments log JSON lines, everything else a console format.
    """
    settings = settings or get_settings()
    service_name = service_name or settings.app_name
    formatter = "json" if settings.environment == "production" else "console"

    loggers = {
        settings.app_name: _logger(settings.log_level),
        "uvicorn": _logger(settings.log_level),
    }
    loggers.update({name: _logger(settings.library_log_level) for name in LIBRARY_LOGGERS})

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "format": FORMATS["json"].format(service=service_name),
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "class": "pythonjsonlogger.json.JsonFormatter"
            },
            "console": {
                "format": FORMATS["console"].format(service=service_name),
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": formatter,
                "stream": sys.stdout
            }
        },
        "loggers": loggers,
        "root": {
            "level": settings.log_level,
            "handlers": ["console"]
        }
    }


def setup_logging(service_name: Optional[str] = None, settings: Optional[Settings] = None) -> None:
    """Configure structured logging using dictConfig."""
    logging.config.dictConfig(get_logging_config(service_name, settings))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
