"""
Logging setup for the apexflow package.

All module loggers hang off the ``apexflow`` logger, which writes to a
rotating file in the platform log directory and optionally to stderr. Every
handler carries a ``SecretRedactingFilter`` so API keys that end up in
exception messages (URLs, auth headers) are masked before they reach disk.
"""

import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from platformdirs import user_log_path

ROOT_LOGGER_NAME = "apexflow"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "app.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

_SECRET_PATTERNS = (
    # Authorization: Bearer/Token <secret>
    re.compile(r"(?i)\b(bearer|token)\s+[A-Za-z0-9._\-]{8,}"),
    # api_key=..., ?key=..., "api-key": "..."
    re.compile(r"""(?i)(\bapi[_-]?key|[?&]key|\bsecret|\bpassword)(["']?\s*[:=]\s*["']?)[^\s"'&,}]{4,}"""),
    # vendor key prefixes
    re.compile(r"\b(?:sk|gsk)[-_][A-Za-z0-9_\-]{12,}"),
)

_logger_instance: Optional[logging.Logger] = None


def get_log_dir() -> Path:
    log_dir = user_log_path(ROOT_LOGGER_NAME, appauthor=False)
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def redact_secrets(message: str) -> str:
    message = _SECRET_PATTERNS[0].sub(lambda m: f"{m.group(1)} [REDACTED]", message)
    message = _SECRET_PATTERNS[1].sub(lambda m: f"{m.group(1)}{m.group(2)}[REDACTED]", message)
    return _SECRET_PATTERNS[2].sub("[REDACTED]", message)


class SecretRedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(
    level: Union[int, str, None] = None,
    console: Optional[bool] = None,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    (Re)build the handlers of the ``apexflow`` logger.

    Args:
        level: Log level; defaults to ``APEXFLOW_LOG_LEVEL`` via config
        console: Also log to stderr; defaults to ``LOG_TO_CONSOLE``
        log_dir: Directory for ``app.log``; defaults to the platform log dir
    """
    global _logger_instance
    from ..core.settings.config import LOG_TO_CONSOLE, get_log_level

    if level is None:
        level = get_log_level()
    elif isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    if console is None:
        console = LOG_TO_CONSOLE

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    _close_handlers(root_logger)
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    redactor = SecretRedactingFilter()

    file_handler = RotatingFileHandler(
        (log_dir or get_log_dir()) / LOG_FILE_NAME,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handlers = [file_handler]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        root_logger.addHandler(handler)

    root_logger.propagate = False
    _logger_instance = root_logger
    return root_logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    if _logger_instance is None:
        configure_logging()

    if name == ROOT_LOGGER_NAME:
        return _logger_instance
    return logging.getLogger(name)


def _close_handlers(root_logger: logging.Logger) -> None:
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


def shutdown_logging() -> None:
    """Close all handlers so the log file is released."""
    global _logger_instance
    _close_handlers(logging.getLogger(ROOT_LOGGER_NAME))
    _logger_instance = None
