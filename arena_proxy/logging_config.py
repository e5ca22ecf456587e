"""Logging setup: stdout plus an optional watched log file.

Env:
    LOG_LEVEL        Root level (default INFO).
    LOG_FILE_PATH    Also write to this file when set.
"""

import os
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any


_configured = False  # idempotency guard

# httpx/httpcore log every request at INFO; the gateway already logs upstream calls
_CHATTY_LOGGERS = ("httpx", "httpcore")


def _build_dict_config(log_file: str | None, level: str) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "std",
        }
    }

    root_handlers = ["console"]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": log_file,
            "formatter": "std",
        }
        root_handlers.append("file")

    chatty_level = level if level == "DEBUG" else "WARNING"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "std": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"}
        },
        "handlers": handlers,
        "loggers": {name: {"level": chatty_level} for name in _CHATTY_LOGGERS},
        "root": {"level": level, "handlers": root_handlers},
    }


def configure_logging() -> None:
    """Configure logging to stdout and (optionally) to LOG_FILE_PATH.

    Idempotent: safe to call multiple times (e.g., per Uvicorn worker import).
    """
    global _configured
    if _configured:
        return

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_file = os.getenv("LOG_FILE_PATH") or None

    logging.config.dictConfig(_build_dict_config(log_file, level))

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).setLevel(level)

    _configured = True
