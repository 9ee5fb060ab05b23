"""Engine settings and configuration management.

This module composes the settings of the different concerns (redis, rate
limiting) into a single `Settings` class. It loads values from environment
variables and .env files, validates them, and exposes a `settings` object for
processes that do not build their own.

Environment Support:
- Development: Uses .env
- Test: Uses .env.test when present
- Staging: Uses .env.staging when present
- Production: Uses .env.production when present
"""

import logging
import os
from pathlib import Path

from pydantic_settings import SettingsConfigDict

from .rate_limiting import RateLimitSettings
from .redis import RedisSettings

logger = logging.getLogger(__name__)


class Settings(RedisSettings, RateLimitSettings):
    """The settings class that aggregates all engine configuration.

    Usage:
        - Access settings via `settings`, or call `create_settings()` to build
          a fresh instance (tests, multi-tenant hosts).
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )


def create_settings() -> Settings:
    """Create settings instance with environment-specific configuration.

    Returns:
        Settings: Configured settings instance
    """
    env = os.getenv("APP_ENV", "development")

    env_files = {
        "development": ".env",
        "test": ".env.test",
        "staging": ".env.staging",
        "production": ".env.production"
    }

    env_file = env_files.get(env, ".env")

    if env != "development" and Path(env_file).exists():
        logger.info(f"Loading environment configuration from {env_file}")
        return Settings(_env_file=env_file)
    if Path(".env").exists():
        logger.info(f"Loading environment configuration from .env (environment: {env})")
    else:
        logger.debug(f"No .env file found, using environment variables only (environment: {env})")
    return Settings()


settings = create_settings()
