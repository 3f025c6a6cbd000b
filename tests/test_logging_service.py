"""
Tests for structured logging utilities
"""

import json
import logging
import logging.handlers
import sys
from unittest.mock import patch

import pytest

from infrastructure.monitoring.logging_service import (
    ErrorTracker,
    StreamlitLogHandler,
    StructuredFormatter,
    log_execution_time,
    log_message_event,
    setup_logging,
)


def make_record(message, **extra):
    record = logging.LogRecord("messaging.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test JSON log output"""

    def test_basic_fields(self):
        data = json.loads(StructuredFormatter().format(make_record("hello")))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["logger"] == "messaging.test"
        assert "chat_id" not in data.get("extra", {})

    def test_extra_fields(self):
        data = json.loads(StructuredFormatter().format(make_record("sent", chat_id="c1", attempt=2)))

        assert data["extra"]["chat_id"] == "c1"
        assert data["extra"]["attempt"] == 2

    def test_exception_info(self):
        try:
            raise ValueError("broken frame")
        except ValueError:
            record = logging.LogRecord("messaging.test", logging.ERROR, __file__, 10, "failed", None,
                                       exc_info=sys.exc_info())

        data = json.loads(StructuredFormatter().format(record))
        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "broken frame"


class TestLogHelpers:
    """Test logging helpers"""

    def test_execution_time_success(self, caplog):
        logger = logging.getLogger("messaging.test.timing")
        with caplog.at_level(logging.DEBUG, logger="messaging.test.timing"):
            with log_execution_time(logger, "fetch_chats", user_id="u1"):
                pass

        completed = [r for r in caplog.records if r.getMessage() == "Completed fetch_chats"]
        assert completed[0].status == "success"
        assert completed[0].user_id == "u1"

    def test_execution_time_failure_reraises(self, caplog):
        logger = logging.getLogger("messaging.test.timing")
        with caplog.at_level(logging.DEBUG, logger="messaging.test.timing"):
            with pytest.raises(RuntimeError):
                with log_execution_time(logger, "fetch_chats"):
                    raise RuntimeError("offline")

        failed = [r for r in caplog.records if r.getMessage().startswith("Failed fetch_chats")]
        assert failed[0].error_type == "RuntimeError"

    def test_message_event(self, caplog):
        logger = logging.getLogger("messaging.test.events")
        with caplog.at_level(logging.INFO, logger="messaging.test.events"):
            log_message_event(logger, "confirmed", "c1", local_id="temp-1-abc")

        record = caplog.records[-1]
        assert record.message_event_type == "confirmed"
        assert record.chat_id == "c1"
        assert record.local_id == "temp-1-abc"


class TestErrorTracker:
    """Test error counting"""

    def test_counts_by_type_and_context(self):
        tracker = ErrorTracker(logging.getLogger("messaging.test.errors"))
        tracker.track_error(ConnectionError("a"), context="send_message")
        tracker.track_error(ConnectionError("b"), context="send_message")
        tracker.track_error(ValueError("c"), context="load_messages")

        summary = tracker.get_error_summary()
        assert summary["total_errors"] == 3
        assert summary["unique_errors"] == 2
        assert summary["error_breakdown"]["ConnectionError:send_message"] == 2


class TestSetupLogging:
    """Test handler configuration"""

    def test_console_and_file_handlers(self, test_environment, tmp_path):
        test_environment.logging.log_file = str(tmp_path / "logs" / "client.log")
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(test_environment)
            handlers = list(root.handlers)
            logging.getLogger("messaging.test.setup").info("written to file")
            for handler in handlers:
                handler.flush()
        finally:
            for handler in root.handlers:
                if handler not in saved_handlers:
                    handler.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers)
        assert logging.getLogger("httpx").level == logging.WARNING
        line = (tmp_path / "logs" / "client.log").read_text(encoding="utf-8").strip().splitlines()[-1]
        assert json.loads(line)["message"] == "written to file"

    def test_debug_console_uses_configured_format(self, test_environment):
        test_environment.logging.format = "%(levelname)s|%(message)s"
        test_environment.logging.enable_file_logging = False
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(test_environment)
            console = [h for h in root.handlers if type(h) is logging.StreamHandler]
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        assert console[0].formatter._fmt == "%(levelname)s|%(message)s"


class TestStreamlitLogHandler:
    """Test surfacing warnings in the page"""

    def test_warning_becomes_toast(self):
        handler = StreamlitLogHandler(logging.WARNING)
        handler.setFormatter(logging.Formatter("%(message)s"))
        record = logging.LogRecord("messaging.test", logging.WARNING, __file__, 10, "Chat updates unavailable",
                                   None, None)

        with patch("infrastructure.monitoring.logging_service.st") as mock_st:
            handler.handle(record)

        mock_st.toast.assert_called_once_with("Chat updates unavailable", icon="⚠️")
