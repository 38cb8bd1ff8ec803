import logging
import os
from logging.config import dictConfig

_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _env_level(name: str, default: str) -> str:
    level = os.environ.get(name, default).upper()
    return level if level in _LEVELS else default


def configure_logging() -> None:
    """
    Console logging for the service.

    LOG_LEVEL sets the root and uvicorn loggers. LOOP_LOG_LEVEL overrides the
    nsloop package alone, so cycle details can be traced without uvicorn noise.
    """
    log_level = _env_level("LOG_LEVEL", "INFO")
    loop_level = _env_level("LOOP_LOG_LEVEL", log_level)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "cycle": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S%z",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "cycle",
                }
            },
            "loggers": {
                "nsloop": {"level": loop_level},
                "uvicorn": {"handlers": ["console"], "level": log_level, "propagate": False},
                "uvicorn.access": {"level": "WARNING"},
                # apscheduler logs every job execution at INFO
                "apscheduler": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
            "root": {"handlers": ["console"], "level": log_level},
        }
    )
    logging.getLogger(__name__).debug("Logging configured", extra={"level": log_level, "loop_level": loop_level})


__all__ = ["configure_logging"]
