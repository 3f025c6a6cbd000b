"""
Tests for configuration system
"""

import pytest

from infrastructure.config.settings import (
    PLACEHOLDER_KEY,
    PLACEHOLDER_URL,
    AppConfig,
    BackendConfig,
    MessagingConfig,
    TypingConfig,
    get_backend_config,
    get_config,
    reload_config,
)


class TestBackendConfig:
    """Test backend connection configuration"""

    def test_from_secrets_uses_environment_under_test(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://abc.supabase.co")
        monkeypatch.setenv("SUPABASE_ANON_KEY", "key-from-env")

        config = BackendConfig.from_secrets()

        assert config.url == "https://abc.supabase.co"
        assert config.anon_key == "key-from-env"
        assert config.schema == "public"

    def test_placeholder_detection(self):
        assert BackendConfig(url=PLACEHOLDER_URL, anon_key="k").is_placeholder
        assert BackendConfig(url="https://abc.supabase.co", anon_key="").is_placeholder
        assert not BackendConfig(url="https://abc.supabase.co", anon_key="k").is_placeholder

    def test_describe_never_includes_key(self):
        key = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.secret-part"
        summary = BackendConfig(url="https://abc.supabase.co", anon_key=key).describe()

        assert summary["key_length"] == len(key)
        assert key not in str(summary)


class TestDefaults:
    """Test default timings"""

    def test_messaging_defaults(self):
        config = MessagingConfig()

        assert config.request_timeout == 15.0
        assert config.send_retry_delay == 2.0
        assert config.send_max_retries == 1
        assert config.page_size == 50
        assert config.fallback_page_size == 30

    def test_typing_defaults(self):
        config = TypingConfig()

        assert config.throttle_interval < config.expiry
        assert config.expiry == 3.0


class TestValidation:
    """Test configuration validation"""

    def make_config(self, tmp_path, url="https://abc.supabase.co", key="anon-key"):
        config = AppConfig(backend=BackendConfig(url=url, anon_key=key))
        config.logging.log_file = str(tmp_path / "logs" / "app.log")
        return config

    def test_valid_config(self, tmp_path):
        config = self.make_config(tmp_path)

        assert config.validate() == []
        assert (tmp_path / "logs").exists()

    @pytest.mark.parametrize("url,key,expected", [
        ("", "anon-key", "URL is required"),
        (PLACEHOLDER_URL, "anon-key", "placeholder"),
        ("http://localhost:8000", "anon-key", "Invalid backend URL format"),
        ("https://abc.supabase.co", "", "anon key is required"),
        ("https://abc.supabase.co", PLACEHOLDER_KEY, "placeholder"),
    ])
    def test_backend_errors(self, tmp_path, url, key, expected):
        errors = self.make_config(tmp_path, url=url, key=key).validate()

        assert len(errors) == 1
        assert expected in errors[0]

    def test_timing_errors(self, tmp_path):
        config = self.make_config(tmp_path)
        config.messaging.request_timeout = 0
        config.typing.throttle_interval = 5.0

        errors = config.validate()

        assert any("request_timeout" in e for e in errors)
        assert any("throttle_interval" in e for e in errors)


class TestGlobalConfig:
    """Test the configuration singleton"""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reload_config_creates_new_instance(self):
        first = get_config()
        second = reload_config()

        assert first is not second
        assert get_config() is second

    def test_backend_config_shortcut(self):
        assert get_backend_config().url == "https://test-project.supabase.co"

    def test_load_applies_environment(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        config = AppConfig.load()

        assert config.environment == "production"
        assert config.debug is False
        assert config.logging.level == "WARNING"
