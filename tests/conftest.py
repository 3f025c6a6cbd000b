"""
Shared fixtures: deterministic configuration and in-memory collaborators
"""

import os
import pytest

os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")

from infrastructure.config.settings import MessagingConfig, TypingConfig, reload_config
from infrastructure.resilience.retry_service import RetryService
from services.chat_service.models import SenderSummary
from services.ui_service.notifications import RecordingNotifier
from tests.fakes import FakeBackend, FakeRealtime, FakeClock


@pytest.fixture(autouse=True)
def test_environment(monkeypatch, tmp_path):
    """Point configuration at a test backend and a temporary log file"""
    monkeypatch.setenv("SUPABASE_URL", "https://test-project.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "test-anon-key")
    monkeypatch.setenv("APP_ENV", "development")
    config = reload_config()
    config.logging.log_file = str(tmp_path / "test.log")
    yield config
    reload_config()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def realtime():
    return FakeRealtime()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def messaging_config():
    """Production semantics with test-sized delays"""
    return MessagingConfig(request_timeout=0.2, send_retry_delay=0.01, send_max_retries=1)


@pytest.fixture
def typing_config():
    return TypingConfig(throttle_interval=0.5, idle_timeout=0.05, expiry=3.0)


@pytest.fixture
def retry_service():
    return RetryService(default_timeout=0.2)


@pytest.fixture
def alice():
    return SenderSummary(id="user-alice", name="Alice", username="alice", avatar_url="https://example.com/a.png")


@pytest.fixture
def bob():
    return SenderSummary(id="user-bob", name="Bob", username="bob", avatar_url="https://example.com/b.png")
