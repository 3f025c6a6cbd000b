"""
Per-environment configuration selected by APP_ENV
"""

import os
from typing import Callable, Dict

from infrastructure.config.settings import AppConfig
from .development import get_development_config
from .production import get_production_config

ENVIRONMENTS: Dict[str, Callable[[], AppConfig]] = {
    "development": get_development_config,
    "production": get_production_config,
}


def get_environment_config() -> AppConfig:
    """
    Build the configuration for the current APP_ENV

    Known environments get their overrides, anything else (staging, ci...)
    falls back to AppConfig.load() with DEBUG read from the environment.
    """
    env = os.getenv("APP_ENV", "development").strip().lower()
    factory = ENVIRONMENTS.get(env)
    return factory() if factory else AppConfig.load()
