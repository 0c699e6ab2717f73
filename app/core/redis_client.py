"""
Redis access: one async client per event loop, plus a short-lived lock that
keeps periodic payment sweeps from running twice at the same time.
"""
import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

SWEEP_LOCK_PREFIX = "parcelshare:sweep"

_client: aioredis.Redis | None = None
_client_lock = asyncio.Lock()


def masked_url(url: str) -> str:
    """redis://:secret@host -> redis://:****@host"""
    try:
        password = urlparse(url).password
    except ValueError:
        return "redis://****"
    return url.replace(f":{password}@", ":****@") if password else url


async def get_redis() -> aioredis.Redis:
    global _client
    if _client is not None:
        return _client

    async with _client_lock:
        if _client is None:
            client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
            await client.ping()
            _client = client
            logger.info("Redis client initialized", extra_data={"url": masked_url(settings.REDIS_URL)})
    return _client


async def close_redis() -> None:
    """Drop the client; Celery calls this before closing each task's loop"""
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()
        logger.info("Redis connection closed")


@asynccontextmanager
async def sweep_lock(name: str, ttl_seconds: int) -> AsyncIterator[bool]:
    """
    Yield True when this worker owns sweep ``name``, False when another does.

    The lock expires on its own after ``ttl_seconds`` so a crashed worker
    never blocks the sweep for longer than that. Only the owner's token
    releases it.
    """
    client = await get_redis()
    key = f"{SWEEP_LOCK_PREFIX}:{name}"
    token = secrets.token_hex(8)
    acquired = bool(await client.set(key, token, nx=True, ex=ttl_seconds))
    if not acquired:
        logger.info("Sweep already running elsewhere", extra_data={"sweep": name})
    try:
        yield acquired
    finally:
        if acquired and await client.get(key) == token:
            await client.delete(key)
