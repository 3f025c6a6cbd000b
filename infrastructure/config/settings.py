"""
Unified configuration system for the messaging client.

This module provides a centralized configuration system that consolidates all client settings,
supports environment-based overrides, and provides type-safe configuration access.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
import streamlit as st
import os
from pathlib import Path


PLACEHOLDER_URL = "https://your-project-id.supabase.co"
PLACEHOLDER_KEY = "your-anon-key-here"


@dataclass
class BackendConfig:
    """Managed backend connection settings"""
    url: str = ""
    anon_key: str = ""
    schema: str = "public"
    client_info: str = "realtime-messaging-client"

    @classmethod
    def from_secrets(cls) -> 'BackendConfig':
        """Load backend config from Streamlit secrets"""
        # In test environment, prefer environment variables
        if os.getenv("PYTEST_CURRENT_TEST") is not None:
            return cls(
                url=os.getenv("SUPABASE_URL", ""),
                anon_key=os.getenv("SUPABASE_ANON_KEY", "")
            )

        try:
            return cls(
                url=st.secrets.get("SUPABASE_URL", ""),
                anon_key=st.secrets.get("SUPABASE_ANON_KEY", "")
            )
        except Exception:
            # Fallback to environment variables if secrets not available
            return cls(
                url=os.getenv("SUPABASE_URL", ""),
                anon_key=os.getenv("SUPABASE_ANON_KEY", "")
            )

    @property
    def is_placeholder(self) -> bool:
        return self.url in ("", PLACEHOLDER_URL) or self.anon_key in ("", PLACEHOLDER_KEY)

    def describe(self) -> Dict[str, Any]:
        """Connection summary safe to log (never includes the key itself)"""
        return {
            "url": self.url or "missing",
            "key_length": len(self.anon_key),
            "key_prefix": self.anon_key[:20] + "..." if self.anon_key else "missing",
        }


@dataclass
class MessagingConfig:
    """Message delivery and loading settings"""
    request_timeout: float = 15.0
    send_retry_delay: float = 2.0
    send_max_retries: int = 1
    page_size: int = 50
    fallback_page_size: int = 30
    search_limit: int = 50
    user_search_limit: int = 10


@dataclass
class TypingConfig:
    """Typing indicator timings (seconds)"""
    throttle_interval: float = 0.5
    idle_timeout: float = 1.0
    expiry: float = 3.0


@dataclass
class PresenceConfig:
    """Presence heartbeat settings"""
    enabled: bool = True
    rpc_name: str = "update_user_presence"


@dataclass
class RealtimeConfig:
    """Change feed connection settings"""
    heartbeat_interval: float = 30.0
    join_timeout: float = 10.0
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0


@dataclass
class AuthConfig:
    """Authentication and profile settings"""
    health_check_timeout: float = 8.0
    profile_create_retries: int = 3
    profile_retry_delay: float = 2.0
    avatar_url_template: str = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"
    default_status_message: str = "Hey there! I'm using this messaging app."


@dataclass
class UIConfig:
    """User-facing notification settings"""
    app_title: str = "Realtime Messaging"
    toast_icons: Dict[str, str] = field(default_factory=lambda: {
        "success": "✅",
        "info": "ℹ️",
        "warning": "⚠️",
        "error": "🚨",
    })


@dataclass
class LoggingConfig:
    """Logging and monitoring configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)-7s %(name)s: %(message)s [%(filename)s:%(lineno)d]"
    enable_file_logging: bool = True
    log_file: str = "logs/app.log"


@dataclass
class AppConfig:
    """Main application configuration"""
    backend: BackendConfig = field(default_factory=BackendConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    typing: TypingConfig = field(default_factory=TypingConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Environment settings
    environment: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))
    debug: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    @classmethod
    def load(cls) -> 'AppConfig':
        """Load configuration with environment overrides"""
        config = cls()

        # Load backend credentials from secrets/environment
        config.backend = BackendConfig.from_secrets()

        # Apply environment-specific overrides
        if config.environment == "production":
            config.debug = False
            config.logging.level = "WARNING"
        elif config.environment == "development":
            config.debug = True
            config.logging.level = "DEBUG"

        return config

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if not self.backend.url:
            errors.append("Backend URL is required (SUPABASE_URL)")
        elif self.backend.url == PLACEHOLDER_URL:
            errors.append("Backend URL is still the placeholder value")
        elif not self.backend.url.startswith("https://") or ".supabase.co" not in self.backend.url:
            errors.append(
                f"Invalid backend URL format. Expected: {PLACEHOLDER_URL}, Got: {self.backend.url}"
            )

        if not self.backend.anon_key:
            errors.append("Backend anon key is required (SUPABASE_ANON_KEY)")
        elif self.backend.anon_key == PLACEHOLDER_KEY:
            errors.append("Backend anon key is still the placeholder value")

        if self.messaging.request_timeout <= 0:
            errors.append("messaging.request_timeout must be positive")

        if self.typing.throttle_interval >= self.typing.expiry:
            errors.append("typing.throttle_interval must be shorter than typing.expiry")

        if self.logging.enable_file_logging:
            log_dir = Path(self.logging.log_file).parent
            if not log_dir.exists():
                log_dir.mkdir(parents=True, exist_ok=True)

        return errors


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        from infrastructure.config.environments import get_environment_config
        _config = get_environment_config()

        # Validate configuration
        errors = _config.validate()
        if errors:
            import warnings
            for error in errors:
                warnings.warn(f"Configuration error: {error}")

    return _config


def reload_config() -> AppConfig:
    """Reload configuration (useful for testing)"""
    global _config
    _config = None
    return get_config()


def get_backend_config() -> BackendConfig:
    """Get backend connection settings"""
    return get_config().backend
