"""
Logging setup for unoserver-web.

Every module logs through `logging.getLogger(__name__)`; this module only
decides the level and format once, from the environment:

- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default INFO, WARNING under pytest)
- LOG_FORMAT: standard, dev or json
"""

import logging
import os
import sys

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEV_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s:%(lineno)d - %(message)s"
JSON_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

_configured = False


def get_log_level() -> int:
    level_str = os.getenv("LOG_LEVEL")
    if level_str:
        return _LEVELS.get(level_str.strip().upper(), logging.INFO)
    # quieter default when running under the test suite
    if "pytest" in sys.modules:
        return logging.WARNING
    return logging.INFO


def get_log_format() -> str:
    format_type = os.getenv("LOG_FORMAT", "standard").lower()
    if format_type in ("dev", "development"):
        return DEV_FORMAT
    if format_type == "json":
        return JSON_FORMAT
    return DEFAULT_FORMAT


def setup_logging(force: bool = False) -> logging.Logger:
    """Configure the `unoserver_web` logger tree once and return its root."""
    global _configured
    root = logging.getLogger("unoserver_web")
    if _configured and not force:
        return root

    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(get_log_format()))
    root.addHandler(handler)
    root.setLevel(get_log_level())
    root.propagate = False
    _configured = True
    return root
