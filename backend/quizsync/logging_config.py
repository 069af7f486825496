from pathlib import Path
import logging
import logging.config
from typing import Optional

from .db import Settings, get_settings


def _rotating(filename: Path, level: str) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "default",
        "level": level,
        "filename": str(filename),
        "maxBytes": 5 * 1024 * 1024,
        "backupCount": 3,
        "encoding": "utf-8",
    }


def configure_logging(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    log_level = settings.LOG_LEVEL.upper()
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": log_level,
            },
            "file": _rotating(log_dir / "app.log", log_level),
            "host_file": _rotating(log_dir / "host.log", log_level),
            "player_file": _rotating(log_dir / "player.log", log_level),
        },
        "root": {
            "level": log_level,
            "handlers": ["console", "file"],
        },
        "loggers": {
            "host": {
                "level": log_level,
                "handlers": ["console", "host_file"],
                "propagate": False,
            },
            "player": {
                "level": log_level,
                "handlers": ["console", "player_file"],
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(config)
