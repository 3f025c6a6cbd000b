"""
Logging for the messaging client.

Console output is human readable in debug runs and JSON otherwise; the
rotating log file is always JSON so delivery and change feed events can be
grepped by chat id or local id. Failures that reach the user are counted by
the ErrorTracker.
"""

import json
import logging
import logging.handlers
import time
import traceback
from collections import Counter, deque
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, Optional, Tuple

import streamlit as st
from streamlit import runtime

from infrastructure.config.settings import AppConfig, get_config

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Transport libraries log every request and frame at DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "aiohttp")

# Attributes every LogRecord carries; anything else was passed through ``extra``
_STANDARD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
    "message", "asctime", "taskName",
}


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRIBUTES}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, ``extra`` fields grouped under "extra" """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            error_type, error, tb = record.exc_info
            entry["exception"] = {
                "type": error_type.__name__ if error_type else None,
                "message": str(error) if error else None,
                "traceback": traceback.format_exception(error_type, error, tb),
            }

        extras = record_extras(record)
        if extras:
            entry["extra"] = extras

        return json.dumps(entry, ensure_ascii=False, default=str)


class StreamlitLogHandler(logging.Handler):
    """Shows warnings and errors as toasts in the running Streamlit page (development only)"""

    def emit(self, record: logging.LogRecord):
        try:
            icon = "🚨" if record.levelno >= logging.ERROR else "⚠️"
            st.toast(self.format(record), icon=icon)
        except Exception:
            self.handleError(record)


def _console_handler(config: AppConfig) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(config.logging.level)
    if config.debug:
        handler.setFormatter(logging.Formatter(config.logging.format))
    else:
        handler.setFormatter(StructuredFormatter())
    return handler


def _file_handler(config: AppConfig) -> logging.Handler:
    log_file = Path(config.logging.log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logging(config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Configure the root logger from the logging configuration

    Args:
        config: Application configuration (defaults to the global one)

    Returns:
        The configured root logger
    """
    config = config or get_config()

    root = logging.getLogger()
    root.setLevel(config.logging.level)
    root.handlers.clear()
    root.addHandler(_console_handler(config))
    if config.logging.enable_file_logging:
        root.addHandler(_file_handler(config))
    if config.debug and config.environment == "development" and runtime.exists():
        page_handler = StreamlitLogHandler(logging.WARNING)
        page_handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(page_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def log_execution_time(logger: logging.Logger, operation: str, **extra_fields):
    """
    Log how long a block took and whether it raised

    The block may await; the duration covers everything up to its exit.
    Exceptions are logged and re-raised.
    """
    started = time.perf_counter()
    logger.debug(f"Starting {operation}", extra={"operation": operation, **extra_fields})
    try:
        yield
    except Exception as e:
        logger.warning(f"Failed {operation}: {e}", extra={
            "operation": operation,
            "duration_seconds": round(time.perf_counter() - started, 4),
            "status": "error",
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields,
        })
        raise
    logger.info(f"Completed {operation}", extra={
        "operation": operation,
        "duration_seconds": round(time.perf_counter() - started, 4),
        "status": "success",
        **extra_fields,
    })


def log_user_interaction(logger: logging.Logger, interaction_type: str, **details):
    """Record a user action (sign in, reaction, profile edit...)"""
    logger.info(f"User interaction: {interaction_type}", extra={
        "event_type": "user_interaction",
        "interaction_type": interaction_type,
        **details,
    })


def log_message_event(logger: logging.Logger, event_type: str, chat_id: Optional[str], **details):
    """
    Record a step in a message's life

    Args:
        logger: Logger instance
        event_type: "submitted", "retrying", "confirmed", "remote_insert"...
        chat_id: Conversation the message belongs to
        **details: local_id, message_id, attempt and the like
    """
    logger.info(f"Message event: {event_type}", extra={
        "event_type": "message_event",
        "message_event_type": event_type,
        "chat_id": chat_id,
        **details,
    })


class ErrorTracker:
    """
    Counts failures by type and context and keeps the most recent ones
    """

    def __init__(self, logger: logging.Logger, history: int = 20):
        self.logger = logger
        self.error_counts: Counter = Counter()
        self.recent: Deque[Tuple[str, str, str]] = deque(maxlen=history)

    def track_error(self, error: Exception, context: str = "", **extra_info):
        error_type = type(error).__name__
        key = f"{error_type}:{context}"
        self.error_counts[key] += 1
        self.recent.append((datetime.now().isoformat(), key, str(error)))

        self.logger.error(f"Error in {context or 'unknown context'}: {error}", extra={
            "event_type": "error",
            "error_type": error_type,
            "error_message": str(error),
            "context": context,
            "error_count": self.error_counts[key],
            **extra_info,
        })

    def get_error_summary(self) -> Dict[str, Any]:
        return {
            "total_errors": sum(self.error_counts.values()),
            "unique_errors": len(self.error_counts),
            "error_breakdown": dict(self.error_counts),
            "recent": list(self.recent),
        }


_logging_configured = False
_error_tracker: Optional[ErrorTracker] = None


def initialize_logging() -> ErrorTracker:
    """Configure handlers once per process and return the error tracker"""
    global _logging_configured
    if not _logging_configured:
        setup_logging()
        _logging_configured = True
    return get_error_tracker()


def get_error_tracker() -> ErrorTracker:
    """Global error tracker; does not touch handler configuration"""
    global _error_tracker
    if _error_tracker is None:
        _error_tracker = ErrorTracker(logging.getLogger("messaging.errors"))
    return _error_tracker
