"""
The common module holds the handful of things every other module needs: the version, the base
exception classes, and logging setup.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path

import appdirs

with (Path(__file__).parent / ".version").open("r") as fp:
    VERSION = fp.read().strip()


class PassfsError(Exception):
    pass


class PassfsExpectedError(PassfsError):
    """These errors are printed without traceback."""

    pass


LOG_FILE_MAX_BYTES = 20 * 1024 * 1024
LOG_FILE_BACKUPS = 10

__logging_initialized: set[str | None] = set()


def log_dir() -> Path:
    """Where passfs.log lives: the XDG state directory, or ~/Library/Logs on macOS."""
    if appdirs.system == "darwin":
        return Path(appdirs.user_log_dir("passfs"))
    return Path(appdirs.user_state_dir("passfs"))


def initialize_logging(logger_name: str | None = None) -> None:
    """
    Attach the stderr and rotating file handlers to `logger_name`. Idempotent per logger. Under pytest
    no handlers are attached and records go to pytest's capture, unless LOG_TEST is set. Set it to see
    the output of a filesystem mounted in a subprocess.
    """
    if logger_name in __logging_initialized:
        return
    __logging_initialized.add(logger_name)

    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)

    log_test = bool(os.environ.get("LOG_TEST"))
    if "pytest" in sys.modules and not log_test:
        return

    short_format = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s", datefmt="%H:%M:%S")
    long_format = logging.Formatter(
        "[ts=%(asctime)s.%(msecs)03d] [pid=%(process)d] [src=%(name)s:%(lineno)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(long_format if log_test else short_format)
    logger.addHandler(stderr_handler)

    directory = log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        directory / "passfs.log",
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
    )
    file_handler.setFormatter(long_format)
    logger.addHandler(file_handler)
