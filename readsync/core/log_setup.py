"""Logging configuration.

Usage:
    from readsync.core.log_setup import configure_logging

    configure_logging(Settings.from_env())

Modules then log through ``logging.getLogger(__name__)`` as usual.
"""

from __future__ import annotations

import logging
import logging.handlers
import re
from pathlib import Path

from readsync.core.settings import Settings

URL_PATTERN = re.compile(r"https?://\S+")
URL_REPLACEMENT = "[URL REDACTED]"


def redact_urls(text: str) -> str:
    return URL_PATTERN.sub(URL_REPLACEMENT, text)


class RedactUrlFilter(logging.Filter):
    """Replace every http(s) URL in a record with a placeholder.

    The message is rendered once and frozen so formatter arguments cannot
    reintroduce the URL.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_urls(record.getMessage())
        record.args = None
        return True


def configure_logging(
    settings: Settings,
    max_bytes: int = 1_000_000,
    backup_count: int = 1,
) -> None:
    """Configure the root logger from settings.

    Args:
        settings: Application settings (log level, log file, secure logs)
        max_bytes: Max size of the log file before rotation
        backup_count: Number of rotated files kept
    """
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
    root_logger.handlers.clear()

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=str(log_path),
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        if settings.secure_logs:
            handler.addFilter(RedactUrlFilter())
        root_logger.addHandler(handler)

    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
