"""Response cache setup (fastapi-cache2 over Redis, in-memory fallback)."""
import hashlib
import json
import logging
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi_cache import FastAPICache
from fastapi_cache.backends.inmemory import InMemoryBackend
from fastapi_cache.backends.redis import RedisBackend
from fastapi_cache.decorator import cache
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from w3hub.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

CACHE_PREFIX = "w3hub"

# Set while a Redis backend is active
redis_client: Optional[aioredis.Redis] = None

# Only these argument types identify a response; injected services are skipped
_KEY_TYPES = (str, int, float, bool, type(None))


def _digest(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest()[:8]


def custom_key_builder(
    func: Callable,
    namespace: str = "",
    request: Request = None,
    response: Response = None,
    args: tuple = None,
    kwargs: dict = None,
) -> str:
    """Key = prefix, endpoint, hash of plain arguments, hash of the query string."""
    parts = [namespace or FastAPICache.get_prefix(), func.__module__, func.__name__]

    plain = sorted((k, v) for k, v in (kwargs or {}).items() if isinstance(v, _KEY_TYPES))
    if plain:
        parts.append(_digest(json.dumps(plain, default=str)))

    if request is not None and request.query_params:
        parts.extend(["q", _digest(str(sorted(request.query_params.items())))])

    return ":".join(parts)


async def init_cache(settings: Optional[Settings] = None):
    """Use Redis when enabled and reachable, otherwise process memory."""
    global redis_client
    settings = settings or default_settings

    if not settings.cache_enabled:
        FastAPICache.init(InMemoryBackend(), prefix=CACHE_PREFIX, key_builder=custom_key_builder, enable=False)
        logger.info("Response cache disabled")
        return

    client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=False)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"⚠️ Redis unreachable ({e}), caching in memory")
        await client.aclose()
        FastAPICache.init(InMemoryBackend(), prefix=CACHE_PREFIX, key_builder=custom_key_builder)
        return

    redis_client = client
    FastAPICache.init(RedisBackend(client), prefix=CACHE_PREFIX, key_builder=custom_key_builder)
    logger.info(f"✅ Redis cache initialized: {settings.redis_url}")


async def close_cache():
    """Close the Redis connection, if one was opened."""
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None


__all__ = ["cache", "init_cache", "close_cache", "custom_key_builder", "CACHE_PREFIX"]
