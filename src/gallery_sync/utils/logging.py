"""Logging configuration for Gallery Sync using structlog.

This module configures structured logging with a human-readable Rich console
and an optional JSON log file for machine parsing.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.typing import EventDict, WrappedLogger

from gallery_sync import __version__

APP_NAME = "gallery-sync"

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Matched case-insensitively as substrings of payload keys
SENSITIVE_FIELDS = {
    "token",
    "apitokens",
    "password",
    "secret",
    "api_key",
    "authorization",
    "credential",
}


def add_app_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to log entries.

    Args:
        logger: The wrapped logger instance
        method_name: The name of the logger method called
        event_dict: The event dictionary to be logged

    Returns:
        EventDict: Modified event dictionary with app context
    """
    event_dict["app"] = APP_NAME
    event_dict["version"] = __version__
    return event_dict


class JSONFileFormatter(logging.Formatter):
    """Formatter that writes one JSON object per record to the log file.

    structlog renders events with ConsoleRenderer for the terminal; this
    formatter strips the ANSI codes and wraps the rendered event as JSON.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": _ANSI_PATTERN.sub("", record.getMessage()),
            "app": APP_NAME,
            "version": __version__,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def configure_logging(
    level: str = "WARNING",
    log_format: str = "json",
    log_file: str | None = None,
    file_level: str | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: File output format ('json' or 'console')
        log_file: Optional path to log file
        file_level: File log level (defaults to DEBUG)

    Note:
        Console output is always human-readable. File output uses JSON by
        default so sync runs can be inspected afterwards.
    """
    console_level = getattr(logging, level.upper(), logging.WARNING)
    file_log_level = getattr(logging, (file_level or "DEBUG").upper(), logging.DEBUG)

    rich_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=True,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(console_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(rich_handler)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_app_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer(colors=False),
    ]

    # The file handler may be more verbose than the console
    effective_level = min(console_level, file_log_level) if log_file else console_level

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(effective_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_log_level)
        if log_format == "json":
            file_handler.setFormatter(JSONFileFormatter())
        else:
            file_handler.setFormatter(logging.Formatter("%(message)s"))

        root_logger.addHandler(file_handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Optional logger name (typically __name__)

    Returns:
        structlog.stdlib.BoundLogger: Configured logger instance
    """
    return structlog.get_logger(name)


def log_api_request(
    logger: structlog.stdlib.BoundLogger,
    method: str,
    url: str,
    status_code: int | None = None,
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    """Log an API request with structured data.

    Args:
        logger: Logger instance
        method: HTTP method (GET, POST, etc.)
        url: Request URL
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
        **extra: Additional context to log
    """
    log_data = {
        "method": method,
        "url": url,
        **extra,
    }

    if status_code is not None:
        log_data["status_code"] = status_code

    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)

    if status_code is None:
        logger.info("api_request_started", **log_data)
    elif 200 <= status_code < 300:
        logger.info("api_request_success", **log_data)
    elif 400 <= status_code < 500:
        logger.warning("api_request_client_error", **log_data)
    else:
        logger.info("api_request_server_error", **log_data)


def log_sync_progress(
    logger: structlog.stdlib.BoundLogger,
    stage: str,
    processed: int,
    total: int,
    **extra: Any,
) -> None:
    """Log sync progress with structured data.

    Args:
        logger: Logger instance
        stage: Pipeline stage name (stage_1, stage_2, stage_3)
        processed: Number of items processed so far
        total: Total number of items
        **extra: Additional context to log
    """
    percentage = (processed / total * 100) if total > 0 else 0

    logger.info(
        "sync_progress",
        stage=stage,
        processed=processed,
        total=total,
        percentage=round(percentage, 2),
        **extra,
    )


def log_error(
    logger: structlog.stdlib.BoundLogger,
    error: Exception,
    context: str,
    **extra: Any,
) -> None:
    """Log an error with full context.

    The traceback attached through ``exc_info`` carries the file and line
    where the error was raised.

    Args:
        logger: Logger instance
        error: Exception that occurred
        context: Operation where the error occurred
        **extra: Additional context to log
    """
    tb = error.__traceback__
    while tb is not None and tb.tb_next is not None:
        tb = tb.tb_next

    logger.error(
        "error_occurred",
        error_type=type(error).__name__,
        error_message=str(error),
        context=context,
        file=tb.tb_frame.f_code.co_filename if tb else None,
        line=tb.tb_lineno if tb else None,
        **extra,
        exc_info=error,
    )


def sanitize_payload(payload: dict[str, Any] | list[Any] | Any, max_depth: int = 10) -> Any:
    """Replace values of sensitive fields with "[REDACTED]" before logging.

    Args:
        payload: The payload to sanitize (dict, list, or primitive)
        max_depth: Maximum recursion depth

    Returns:
        Sanitized copy of the payload
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(payload, dict):
        sanitized = {}
        for key, value in payload.items():
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_FIELDS):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, (dict, list)):
                sanitized[key] = sanitize_payload(value, max_depth - 1)
            else:
                sanitized[key] = value
        return sanitized

    if isinstance(payload, list):
        return [sanitize_payload(item, max_depth - 1) for item in payload]

    return payload


def truncate_payload(payload: Any, max_size: int = 10000) -> str:
    """Convert payload to string and truncate if too large.

    Args:
        payload: The payload to convert and truncate
        max_size: Maximum size in characters

    Returns:
        String representation of payload, truncated if necessary
    """
    try:
        payload_str = json.dumps(payload, indent=2, default=str)
    except (TypeError, ValueError):
        payload_str = str(payload)

    if len(payload_str) > max_size:
        return payload_str[:max_size] + f"\n... [TRUNCATED - {len(payload_str)} total chars]"

    return payload_str


def should_log_payloads(logger: structlog.stdlib.BoundLogger, log_payloads_enabled: bool) -> bool:
    """Check if payload logging should be enabled.

    Payload logging requires the log_payloads flag and a DEBUG-enabled logger.

    Args:
        logger: Logger instance
        log_payloads_enabled: Value of log_payloads config flag

    Returns:
        True if payloads should be logged, False otherwise
    """
    if not log_payloads_enabled:
        return False

    return logging.getLogger().isEnabledFor(logging.DEBUG)
