"""
Logging setup.

Installs handlers on the ``rewriteflow`` logger: a rich console handler by
default, or JSON lines (one object per record) for machine consumption,
plus an optional file handler.

Usage:
    configure_logging(LoggingConfig(level="DEBUG", json_format=True))
    logging.getLogger("rewriteflow.orchestrator").info("Run started")
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

from rich.console import Console
from rich.logging import RichHandler

from rewriteflow.config.models import LoggingConfig

ROOT_LOGGER = "rewriteflow"

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = set(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class JsonLinesFormatter(logging.Formatter):
    """Formats records as single-line JSON objects.

    Fields passed through ``extra=`` are merged into the object.
    """

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                data[key] = value
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def configure_logging(
    config: LoggingConfig | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure the rewriteflow logger hierarchy.

    Replaces any handlers installed by a previous call, so it is safe to
    call more than once.

    Args:
        config: Logging settings (defaults apply when omitted)
        stream: Output stream for the console handler (defaults to stderr)

    Returns:
        The configured ``rewriteflow`` logger
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.value)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if config.json_format:
        console_handler: logging.Handler = logging.StreamHandler(stream or sys.stderr)
        console_handler.setFormatter(JsonLinesFormatter())
    else:
        console_handler = RichHandler(
            console=Console(file=stream or sys.stderr),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if config.file:
        file_handler = logging.FileHandler(config.file, encoding="utf-8")
        if config.json_format:
            file_handler.setFormatter(JsonLinesFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    return logger
