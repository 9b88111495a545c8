"""Structured logging configuration."""

import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from broker.config import settings

# Keys whose values must never reach a log sink.
SENSITIVE_KEYS = (
    "access_token",
    "refresh_token",
    "client_secret",
    "api_key",
    "secret",
    "password",
    "authorization",
    "signature",
)

_SENSITIVE_PATTERN = re.compile(
    r"(?i)(" + "|".join(SENSITIVE_KEYS) + r")(['\"]?\s*[:=]\s*['\"]?)([^'\"\s,&}]+)"
)


def redact(value: str) -> str:
    """Mask credential-looking key/value pairs inside a string."""
    return _SENSITIVE_PATTERN.sub(r"\1\2***", value)


def _redact_extra(value):
    if isinstance(value, dict):
        return {
            k: "***" if any(s in str(k).lower() for s in SENSITIVE_KEYS) else _redact_extra(v)
            for k, v in value.items()
        }
    if isinstance(value, str):
        return redact(value)
    return value


class RedactingFilter(logging.Filter):
    """Scrub secrets from log messages and structured extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            try:
                record.msg = record.getMessage()
            except (TypeError, ValueError):
                record.msg = str(record.msg)
            record.args = None
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        for key, value in list(record.__dict__.items()):
            if key in SENSITIVE_KEYS:
                record.__dict__[key] = "***"
            elif isinstance(value, dict):
                record.__dict__[key] = _redact_extra(value)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding the fields the log pipeline indexes on."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        if record.funcName:
            log_record['function'] = record.funcName


def setup_logging(base_dir: str | Path | None = None, write_files: bool = True):
    """Configure logging for the application.

    Args:
        base_dir: Optional base directory to place the logs/ folder in.
                  If omitted, uses the current working directory.
        write_files: Set False to log to the console only.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    redacting = RedactingFilter()

    # Console handler (human-readable for development)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    console_handler.addFilter(redacting)
    root_logger.addHandler(console_handler)

    if not write_files:
        return root_logger

    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    json_handler.addFilter(redacting)
    root_logger.addHandler(json_handler)

    # Errors only
    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    error_handler.addFilter(redacting)
    root_logger.addHandler(error_handler)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges bound context into every record."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with context fields bound.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields (e.g., provider='shipbob', integration_id=12)

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
