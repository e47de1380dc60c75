"""
Process-wide settings. Nothing here has side effects on import, entry points apply
`logging_config` via `logging.config.dictConfig` themselves
"""

import os

log_level = os.environ.get("STEPENGINE_LOG_LEVEL", "INFO").upper()

logging_config = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)s %(process)d %(name)s %(message)s",
        },
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "stepengine": {
            "handlers": ["default"],
            "level": log_level,
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["default"],
        "level": "WARNING",
    },
}


def environment_name() -> str:
    """Name of the hosting environment, recorded as metadata on launched workers"""
    return os.environ.get("STEPENGINE_ENVIRONMENT", "local")
