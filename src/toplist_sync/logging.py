"""Logging setup shared by the CLIs and the Cloud Functions trigger."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path

from toplist_sync.paths import repo_file

NOISY_LIBRARY_LOGGERS = ("urllib3", "requests")

LOCAL_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
# Cloud Logging stamps each line itself.
FUNCTION_FORMAT = "%(levelname)s [%(name)s] %(message)s"
FUNCTION_ENV_VARS = ("FUNCTION_TARGET", "K_SERVICE")


def _resolve_level(default: str = "INFO") -> int:
    level_name = os.getenv("LOG_LEVEL", default).upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def _config_path() -> Path:
    explicit = os.getenv("LOG_CONFIG", "").strip()
    return Path(explicit) if explicit else repo_file("logging.ini")


def running_in_function() -> bool:
    return any(os.getenv(name) for name in FUNCTION_ENV_VARS)


def configure_logging() -> logging.Logger:
    """
    Configure the root logger once per process.

    ``LOG_CONFIG`` (or ``logging.ini`` at the repo root) wins when present;
    otherwise a single stream handler is installed. ``LOG_LEVEL`` sets the
    root level and the HTTP libraries are held at INFO so request bodies
    never reach DEBUG output.
    """
    root = logging.getLogger()
    config_path = _config_path()
    if config_path.is_file():
        logging.config.fileConfig(str(config_path), disable_existing_loggers=False)
    elif not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(FUNCTION_FORMAT if running_in_function() else LOCAL_FORMAT))
        root.addHandler(handler)

    root.setLevel(_resolve_level())
    for logger_name in NOISY_LIBRARY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.INFO)
    return root
