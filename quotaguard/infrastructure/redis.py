"""
Redis Connection Module

This module builds the synchronous Redis client backing the shared counter
store. The client owns a connection pool whose lifecycle belongs to the process
that starts the admission controller: create it once at startup, share it
between threads, and close it on shutdown.

**Security Note**: Ensure that the Redis connection URL (REDIS_URL) uses TLS
(rediss://) when connecting over an untrusted network, and never log the URL
itself since it may embed the password.

Functions:
    create_redis_client: Build a pooled Redis client from settings.
"""

import logging

from redis import Redis
from redis.connection import ConnectionPool

from quotaguard.core.config.redis import RedisSettings

logger = logging.getLogger(__name__)


def create_redis_client(settings: RedisSettings) -> Redis:
    """
    Provides a pooled, synchronous Redis client.

    Socket timeouts come from settings and bound how long an admission check
    can block on the store; a timeout surfaces as a store failure.

    Args:
        settings: Redis connection settings.

    Returns:
        Redis: A client backed by a dedicated connection pool.
    """
    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
        decode_responses=True,
    )
    logger.debug("Redis connection pool created")
    return Redis(connection_pool=pool)
