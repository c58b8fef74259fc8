"""
Logging setup for the restore engine and CLI.

Logging strategy
----------------
- INFO (default): high-level pipeline progress for operators.
- DEBUG (--debug): collaborator commands, timings, state changes.
- WARNING: recoverable issues (cleanup failure, notification delivery).
- ERROR: stage failures.
- CRITICAL: rollback failures that need manual intervention.

All engine loggers live under the ``stackrestore`` namespace.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOGGER_NAME = "stackrestore"


class CleanFormatter(logging.Formatter):
    """
    Console formatter for operator-facing output.

    INFO records print the bare message; WARNING and above carry a level prefix.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        if record.levelno == logging.INFO:
            return message
        if record.levelno == logging.WARNING:
            return f"[!] WARNING: {message}"
        if record.levelno == logging.ERROR:
            return f"[X] ERROR: {message}"
        if record.levelno >= logging.CRITICAL:
            return f"[!!] CRITICAL: {message}"
        return f"[DEBUG] {message}"


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    debug: bool = False,
) -> logging.Logger:
    """
    Configure the ``stackrestore`` logger.

    Parameters
    ----------
    level:
        Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    log_file:
        Optional file receiving a detailed log in addition to the console.
    debug:
        Force DEBUG level and a detailed console format.

    Returns
    -------
    logging.Logger
        The configured root logger of the namespace.
    """
    if debug:
        level = "DEBUG"
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.propagate = False

    # Called more than once from tests and embedding code.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    if debug:
        console_handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] %(levelname)s [%(name)s:%(lineno)d]: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    else:
        console_handler.setFormatter(CleanFormatter("%(message)s"))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
        logger.debug("Logging to file: %s", log_file)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the namespace logger, or a child of it."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)
