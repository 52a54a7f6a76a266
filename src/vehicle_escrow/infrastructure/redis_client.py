"""Redis client for idempotency keys.

The simulated anchor service stores the reference it generated for each
transfer idempotency key here, so retries served by any API replica get the
same ledger reference back.

Usage:
    from vehicle_escrow.infrastructure.redis_client import init_redis, get_redis

    await init_redis()
    stored = await remember_idempotent_result("ownership-transfer:abc", "sim_123")
"""

from __future__ import annotations

import redis.asyncio as aioredis

from vehicle_escrow.config import get_settings
from vehicle_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

_IDEMPOTENCY_PREFIX = "idempotency:"


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def remember_idempotent_result(key: str, value: str) -> str:
    """Store ``value`` under ``key`` unless a value is already there.

    Returns the stored value: ``value`` for the first caller, the original
    value for every later caller with the same key.
    """
    settings = get_settings()
    redis = get_redis()
    full_key = f"{_IDEMPOTENCY_PREFIX}{key}"
    created = await redis.set(
        full_key,
        value,
        nx=True,
        ex=settings.redis_idempotency_ttl_seconds,
    )
    if created:
        return value
    existing = await redis.get(full_key)
    return existing if existing is not None else value
