"""Logging setup shared by every module."""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler

from requestarr.config.env import ENABLE_LOGGING, LOG_DIR, LOG_FILE, LOG_LEVEL

_ROOT_LOGGER_NAME = "requestarr"
_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 3

_configure_lock = threading.Lock()
_configured = False


def _build_file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=_MAX_LOG_BYTES, backupCount=_LOG_BACKUPS)
    except OSError:
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_root() -> None:
    global _configured
    with _configure_lock:
        if _configured:
            return

        root = logging.getLogger(_ROOT_LOGGER_NAME)
        root.setLevel(LOG_LEVEL)

        formatter = logging.Formatter(_LOG_FORMAT)
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)

        if ENABLE_LOGGING:
            file_handler = _build_file_handler(formatter)
            if file_handler is not None:
                root.addHandler(file_handler)

        _configured = True


def setup_logger(name: str) -> logging.Logger:
    """Return a logger under the application root, configuring handlers once."""
    _configure_root()
    if name == _ROOT_LOGGER_NAME or name.startswith(f"{_ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")
