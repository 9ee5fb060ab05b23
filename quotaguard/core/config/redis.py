"""
Redis connection settings for the shared counter store.
"""
import logging

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class RedisSettings(BaseSettings):
    """
    Defines settings for the Redis connection backing the counter store.

    Security Note:
        - REDIS_PASSWORD should be set wherever Redis is reachable from
          untrusted networks, and REDIS_SSL enabled (rediss://).
    Latency Note:
        - REDIS_SOCKET_TIMEOUT bounds every admission check. A timeout is
          treated as a store failure and answered by the fallback path, so keep
          it in the 50-200ms range for request-path usage.
    """
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = Field(ge=1, le=65535, default=6379)
    REDIS_DB: int = Field(ge=0, default=0)
    REDIS_PASSWORD: SecretStr = SecretStr("")
    REDIS_SSL: bool = False
    REDIS_URL: str = Field(default="", validate_default=True)

    REDIS_SOCKET_TIMEOUT: float = Field(default=0.1, gt=0)
    REDIS_SOCKET_CONNECT_TIMEOUT: float = Field(default=0.2, gt=0)
    REDIS_MAX_CONNECTIONS: int = Field(default=50, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def assemble_redis_url(cls, v: str | None, info: ValidationInfo) -> str:
        """
        Assembles the Redis connection URL if not provided explicitly.

        Args:
            v: Explicitly provided URL or None.
            info: Validation context with other field values.

        Returns:
            Assembled or provided Redis URL.
        """
        if v:
            return v

        values = info.data
        protocol = "rediss" if values.get("REDIS_SSL") else "redis"
        redis_password = values.get("REDIS_PASSWORD")
        secret = redis_password.get_secret_value() if isinstance(redis_password, SecretStr) else redis_password
        password = f":{secret}@" if secret else ""

        url = f"{protocol}://{password}{values.get('REDIS_HOST')}:{values.get('REDIS_PORT')}/{values.get('REDIS_DB', 0)}"
        logger.debug("Assembled REDIS_URL (password masked for security).")
        return url
