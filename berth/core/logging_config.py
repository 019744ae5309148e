"""
Logging infrastructure for Berth.

Berth's own records and forwarded container output share one set of handlers.
Container output is logged under ``berth.container.<name>`` with the source
stream attached, so both formatters can show which container a line came from.
"""

import logging
import logging.handlers
import json
import sys
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

CONTAINER_LOGGER = "berth.container"

_SIZE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMG]?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}


def container_name(record: logging.LogRecord) -> Optional[str]:
    """Name of the container a record was forwarded from, if any."""
    prefix = CONTAINER_LOGGER + "."
    if record.name.startswith(prefix):
        return record.name[len(prefix):]
    return None


class SensitiveDataFilter(logging.Filter):
    """Filter to redact registry credentials from log messages."""

    PATTERNS = [
        (re.compile(r'(Authorization:\s+)(?:Basic\s+|Bearer\s+)?\S+', re.IGNORECASE), r'\1***REDACTED***'),
        (re.compile(r'(X-Registry-Auth:\s+)\S+', re.IGNORECASE), r'\1***REDACTED***'),
        (re.compile(r'(["\']?(?:password|auth|identitytoken)["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+', re.IGNORECASE),
         r'\1***REDACTED***'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            for pattern, replacement in self.PATTERNS:
                record.msg = pattern.sub(replacement, record.msg)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; forwarded output also carries container and stream."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        name = container_name(record)
        if name is not None:
            log_data["container"] = name
            log_data["stream"] = getattr(record, "stream", "stdout")

        if hasattr(record, "context"):
            log_data["context"] = record.context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """
    Human-readable output.

    Berth's records get a timestamped header; container output is printed as
    ``<container> | <line>`` so it reads like the engine's own log view.
    """

    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        name = container_name(record)
        if name is None:
            return super().format(record)
        return f"{name} | {record.getMessage()}"


def _make_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    handler.addFilter(SensitiveDataFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    format_type: str = "text",
    log_file: Optional[str] = None,
    rotation_size: str = "10MB",
    rotation_count: int = 5,
    module_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Configure Berth logging.

    Args:
        level: Default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format ("json" or "text")
        log_file: Optional file path, rotated once it reaches rotation_size
        rotation_size: Size limit for log rotation (e.g., "10MB")
        rotation_count: Number of rotated log files to keep
        module_levels: Per-logger levels, e.g. {"berth.container": "WARNING"}
            to hide container stdout while keeping its stderr
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if format_type == "json" else TextFormatter()

    # Container output goes to stdout alongside our own records
    root_logger.addHandler(_make_handler(logging.StreamHandler(sys.stdout), formatter))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=_parse_size(rotation_size),
            backupCount=rotation_count,
            encoding='utf-8'
        )
        root_logger.addHandler(_make_handler(file_handler, formatter))

    for module_name, module_level in (module_levels or {}).items():
        logging.getLogger(module_name).setLevel(getattr(logging, module_level.upper()))

    root_logger.debug(f"Logging configured: level={level}, format={format_type}, file={log_file}")


def _parse_size(size_str: str) -> int:
    """
    Parse a rotation size such as "512KB" or "1.5MB" into bytes.

    Raises:
        ValueError: If the size is not a number with an optional B/KB/MB/GB suffix
    """
    match = _SIZE.match(size_str)
    if not match:
        raise ValueError(f"Invalid log rotation size: {size_str!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "B").upper()])


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module."""
    return logging.getLogger(name)


def log_with_context(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """
    Log a message with additional structured context.

    The context appears under "context" in JSON output.
    """
    extra = {"context": context} if context else {}
    logger.log(level, message, extra=extra)
