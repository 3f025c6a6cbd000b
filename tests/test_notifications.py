"""
Tests for user-visible notifications and error surfacing
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from infrastructure.external.backend_errors import (
    AuthorizationError,
    BackendError,
    ConnectivityError,
    RequestTimeoutError,
    ValidationError,
)
from infrastructure.monitoring.logging_service import get_error_tracker
from services.ui_service.notifications import (
    FIELD_ERRORS_KEY,
    LogNotifier,
    NotificationLevel,
    RecordingNotifier,
    StreamlitNotifier,
    describe_error,
    get_notifier,
    set_notifier,
    surface_error,
)


class TestDescribeError:
    """Test user-facing error text"""

    @pytest.mark.parametrize("error,expected", [
        (RequestTimeoutError("slow"), "timed out"),
        (ConnectivityError("offline"), "Cannot reach the server"),
        (AuthorizationError("denied"), "not allowed"),
        (ValidationError("Username is already taken"), "Username is already taken"),
        (BackendError("odd failure"), "Something went wrong: odd failure"),
        (RuntimeError("bug"), "unexpected error"),
    ])
    def test_messages(self, error, expected):
        assert expected in describe_error(error)


class TestSurfaceError:
    """Test reporting caught failures"""

    def test_validation_field_is_kept(self):
        notifier = RecordingNotifier()
        surface_error(ValidationError("Username is already taken", field="username"), notifier, "sign_up")

        [notification] = notifier.errors
        assert notification.field == "username"
        assert notification.message == "Username is already taken"

    def test_explicit_field_wins(self):
        notifier = RecordingNotifier()
        surface_error(ValidationError("bad", field="username"), notifier, field="email")
        assert notifier.errors[0].field == "email"

    def test_error_is_tracked(self):
        tracker = get_error_tracker()
        before = tracker.error_counts.get("ConnectivityError:send_message", 0)

        surface_error(ConnectivityError("offline"), RecordingNotifier(), "send_message")

        assert tracker.error_counts["ConnectivityError:send_message"] == before + 1

    def test_default_notifier(self):
        recorder = RecordingNotifier()
        set_notifier(recorder)
        try:
            surface_error(AuthorizationError("denied"))
        finally:
            set_notifier(None)

        assert len(recorder.errors) == 1


class TestNotifiers:
    """Test notifier backends"""

    def test_recording_notifier_levels(self):
        notifier = RecordingNotifier()
        notifier.info("hello")
        notifier.success("done")
        notifier.warning("careful")
        notifier.error("broken")

        assert [n.level for n in notifier.notifications] == [
            NotificationLevel.INFO, NotificationLevel.SUCCESS, NotificationLevel.WARNING, NotificationLevel.ERROR,
        ]
        assert [n.message for n in notifier.errors] == ["broken"]

    def test_log_notifier(self, caplog):
        with caplog.at_level(logging.INFO, logger="services.ui_service.notifications"):
            LogNotifier().error("Message failed to send")

        assert "Message failed to send" in caplog.text

    def test_streamlit_notifier_shows_toast(self):
        with patch("services.ui_service.notifications.st") as mock_st:
            mock_st.session_state = {}
            StreamlitNotifier().error("Username is already taken", field="username")

        mock_st.toast.assert_called_once_with("Username is already taken", icon="🚨")
        assert mock_st.session_state[FIELD_ERRORS_KEY] == {"username": "Username is already taken"}

    def test_streamlit_notifier_without_field(self):
        with patch("services.ui_service.notifications.st") as mock_st:
            mock_st.session_state = {}
            StreamlitNotifier().success("Signed in")

        mock_st.toast.assert_called_once_with("Signed in", icon="✅")
        assert FIELD_ERRORS_KEY not in mock_st.session_state

    def test_log_notifier_outside_streamlit(self):
        set_notifier(None)
        try:
            with patch("services.ui_service.notifications.runtime") as mock_runtime:
                mock_runtime.exists.return_value = False
                assert isinstance(get_notifier(), LogNotifier)
        finally:
            set_notifier(None)

    def test_streamlit_notifier_inside_script_run(self):
        set_notifier(None)
        try:
            with patch("services.ui_service.notifications.runtime") as mock_runtime:
                mock_runtime.exists.return_value = True
                assert isinstance(get_notifier(), StreamlitNotifier)
        finally:
            set_notifier(None)
