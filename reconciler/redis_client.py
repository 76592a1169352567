"""
Redis backend for the status-change queue (used when SQS_QUEUE_URL is not set).
"""
import json

import redis.asyncio as redis

from reconciler.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def enqueue(key: str, body: dict) -> None:
    r = await get_redis()
    await r.lpush(key, json.dumps(body))


async def queue_length(key: str) -> int:
    r = await get_redis()
    return int(await r.llen(key))
