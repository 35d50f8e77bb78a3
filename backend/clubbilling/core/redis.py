"""
Redis connection

A single client is shared by the process. The billing core only uses Redis
as the outbound lifecycle-notification stream (``XADD``), so a lost
connection never affects billing state.
"""
from __future__ import annotations

from functools import lru_cache

import redis

from clubbilling.core.config import settings


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """
    Return the process-wide Redis client, created on first use.

    ``decode_responses=True`` keeps stream ids and fields as ``str``.
    """
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
    )
