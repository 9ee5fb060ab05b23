from .rate_limiting import RateLimitSettings
from .redis import RedisSettings
from .settings import Settings, create_settings, settings

__all__ = ["RateLimitSettings", "RedisSettings", "Settings", "create_settings", "settings"]
