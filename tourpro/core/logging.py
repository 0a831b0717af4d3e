"""Structured logging configuration for Tour Pro."""

import logging
import sys
from typing import Any


def _format_value(value: Any) -> str:
    """Quote values containing whitespace so each line stays splittable on spaces."""
    text = str(value)
    if any(ch.isspace() for ch in text):
        escaped = text.replace('"', '\\"')
        return f'"{escaped}"'
    return text


class StructuredFormatter(logging.Formatter):
    """Key=value structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured output."""
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        if hasattr(record, "run_id"):
            log_data["run_id"] = record.run_id

        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        line = " ".join(f"{k}={_format_value(v)}" for k, v in log_data.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

        try:
            from tourpro.core.config import get_settings

            level = logging.DEBUG if get_settings().TOURPRO_ENV == "dev" else logging.INFO
        except Exception:
            # Settings unavailable (e.g. missing API key at import time)
            level = logging.INFO
        logger.setLevel(level)

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with additional context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (run_id, source, counts, ...)
    """
    run_id = kwargs.pop("run_id", None)
    extra: dict[str, Any] = {"extra_data": kwargs}
    if run_id is not None:
        extra["run_id"] = str(run_id)

    logger.log(level, msg, extra=extra)
