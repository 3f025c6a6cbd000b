"""
User-visible notifications for background failures.

Failures raised inside background tasks (delivery, change feed listeners,
presence) never reach a caller, so services report them here. Inside a
Streamlit script run they become toasts; anywhere else they are logged.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import streamlit as st
from streamlit import runtime

from infrastructure.config.settings import get_config
from infrastructure.external.backend_errors import (
    AuthorizationError,
    BackendError,
    ConnectivityError,
    RequestTimeoutError,
    ValidationError,
)
from infrastructure.monitoring.logging_service import get_error_tracker, get_logger

FIELD_ERRORS_KEY = "field_errors"


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notification:
    level: NotificationLevel
    message: str
    field: Optional[str] = None


class Notifier:
    """Base notifier; subclasses decide where notifications are shown"""

    def notify(self, notification: Notification):
        raise NotImplementedError

    def info(self, message: str):
        self.notify(Notification(NotificationLevel.INFO, message))

    def success(self, message: str):
        self.notify(Notification(NotificationLevel.SUCCESS, message))

    def warning(self, message: str):
        self.notify(Notification(NotificationLevel.WARNING, message))

    def error(self, message: str, field: Optional[str] = None):
        self.notify(Notification(NotificationLevel.ERROR, message, field=field))


class LogNotifier(Notifier):
    """Notifier for headless use: notifications go to the log"""

    def __init__(self):
        self.logger = get_logger(__name__)

    def notify(self, notification: Notification):
        if notification.level == NotificationLevel.ERROR:
            self.logger.error(notification.message, extra={"field": notification.field})
        elif notification.level == NotificationLevel.WARNING:
            self.logger.warning(notification.message)
        else:
            self.logger.info(notification.message)


class StreamlitNotifier(Notifier):
    """Non-blocking toasts; field errors are also kept in session state for forms"""

    def __init__(self):
        self.icons = get_config().ui.toast_icons

    def notify(self, notification: Notification):
        st.toast(notification.message, icon=self.icons.get(notification.level.value))
        if notification.field:
            field_errors = st.session_state.setdefault(FIELD_ERRORS_KEY, {})
            field_errors[notification.field] = notification.message


class RecordingNotifier(Notifier):
    """Keeps notifications in memory (useful for embedding and tests)"""

    def __init__(self):
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification):
        self.notifications.append(notification)

    @property
    def errors(self) -> List[Notification]:
        return [n for n in self.notifications if n.level == NotificationLevel.ERROR]


def describe_error(error: Exception) -> str:
    """Short user-facing text for a failure"""
    if isinstance(error, RequestTimeoutError):
        return "The request timed out. Please check your connection and try again."
    if isinstance(error, ConnectivityError):
        return "Cannot reach the server. Please check your connection."
    if isinstance(error, AuthorizationError):
        return "You are not allowed to do that. Please sign in again."
    if isinstance(error, ValidationError):
        return error.message
    if isinstance(error, BackendError):
        return f"Something went wrong: {error.message}"
    return "An unexpected error occurred."


def surface_error(error: Exception, notifier: Optional[Notifier] = None, context: str = "",
                  field: Optional[str] = None):
    """
    Report a caught failure to the user and the error tracker

    Args:
        error: The caught exception
        notifier: Where to show it (defaults to the global notifier)
        context: Operation name for the error tracker
        field: Form field a validation failure belongs to
    """
    get_error_tracker().track_error(error, context=context)
    if field is None and isinstance(error, ValidationError):
        field = error.field
    (notifier or get_notifier()).error(describe_error(error), field=field)


# Global notifier instance
_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """Get the global notifier, toasts inside a Streamlit run, log otherwise"""
    global _notifier
    if _notifier is None:
        _notifier = StreamlitNotifier() if runtime.exists() else LogNotifier()
    return _notifier


def set_notifier(notifier: Optional[Notifier]):
    global _notifier
    _notifier = notifier
