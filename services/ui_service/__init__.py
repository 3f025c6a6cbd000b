"""
UI service - user-visible notifications.
"""

from .notifications import (
    Notification,
    NotificationLevel,
    Notifier,
    LogNotifier,
    StreamlitNotifier,
    RecordingNotifier,
    describe_error,
    surface_error,
    get_notifier,
    set_notifier
)

__all__ = [
    'Notification',
    'NotificationLevel',
    'Notifier',
    'LogNotifier',
    'StreamlitNotifier',
    'RecordingNotifier',
    'describe_error',
    'surface_error',
    'get_notifier',
    'set_notifier'
]
