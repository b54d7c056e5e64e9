"""
Shared Redis mirror for pool state.

Detectors running in separate processes publish the reserves they fetch
under one key namespace, so a pool read by one process is a cache hit for
the others. The mirror is optional: every caller treats it as a second-level
cache and keeps working from the provider when Redis is down.
"""
import logging
from typing import Optional

import redis.asyncio as redis

from ..config.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

POOL_STATE_NAMESPACE = "pool_state"

# Process-wide mirror connection
_mirror: Optional[redis.Redis] = None


def pool_state_key(chain: str, address: str) -> str:
    """Mirror key of one pool; Solana addresses keep their case."""
    return f"{POOL_STATE_NAMESPACE}:{chain}:{address}"


async def get_redis(settings: Optional[Settings] = None) -> redis.Redis:
    """Connected mirror client, created on first use."""
    global _mirror

    if _mirror is None:
        _mirror = await connect_mirror(settings or default_settings)
    return _mirror


async def connect_mirror(settings: Settings) -> redis.Redis:
    """
    Open a client for ``REDIS_URL`` and verify it answers.

    Socket timeouts are short: a slow mirror read must not hold up detection
    longer than fetching the pool from the provider would.

    Raises:
        ValueError: REDIS_URL is not set
        redis.RedisError: the server did not answer the initial ping
    """
    if not settings.redis_url:
        raise ValueError("REDIS_URL is not set; the pool state mirror is disabled")

    client = redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        health_check_interval=30,
        max_connections=settings.redis_max_connections,
    )
    try:
        await client.ping()
    except redis.RedisError as e:
        logger.error(f"Pool state mirror unreachable: {e}")
        await client.aclose()
        raise

    logger.info("Pool state mirror connected")
    return client


async def close_redis() -> None:
    """Close the mirror connection if one was opened."""
    global _mirror

    if _mirror is not None:
        await _mirror.aclose()
        _mirror = None
        logger.info("Pool state mirror closed")
