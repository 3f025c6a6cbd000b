"""
Production environment configuration overrides
"""

from dataclasses import dataclass
from infrastructure.config.settings import AppConfig, BackendConfig


@dataclass
class ProductionConfig(AppConfig):
    """Production environment configuration"""

    def __post_init__(self):
        self.backend = BackendConfig.from_secrets()

        self.environment = "production"
        self.debug = False

        # Production logging - less verbose, focus on errors
        self.logging.level = "INFO"
        self.logging.enable_file_logging = True
        self.logging.log_file = "logs/prod-app.log"

        self.ui.app_title = "💬 Realtime Messaging"

        self.realtime.max_reconnect_attempts = 10


def get_production_config() -> ProductionConfig:
    """Get production-specific configuration"""
    return ProductionConfig()
