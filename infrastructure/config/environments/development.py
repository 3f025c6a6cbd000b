"""
Development environment configuration overrides
"""

from dataclasses import dataclass
from infrastructure.config.settings import AppConfig, BackendConfig


@dataclass
class DevelopmentConfig(AppConfig):
    """Development environment configuration"""

    def __post_init__(self):
        # Credentials still come from secrets/environment
        self.backend = BackendConfig.from_secrets()

        self.environment = "development"
        self.debug = True

        # More verbose logging in development
        self.logging.level = "DEBUG"
        self.logging.enable_file_logging = True
        self.logging.log_file = "logs/dev-app.log"

        self.ui.app_title = "💬 Realtime Messaging (DEV)"

        # Give up reconnecting sooner while iterating locally
        self.realtime.max_reconnect_attempts = 3


def get_development_config() -> DevelopmentConfig:
    """Get development-specific configuration"""
    return DevelopmentConfig()
