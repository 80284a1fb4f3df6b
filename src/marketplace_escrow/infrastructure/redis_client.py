"""Redis connection backing the domain event stream.

``connect_event_stream`` is what the API lifespan and the auto-release job
call at startup: it connects, installs a RedisStreamDispatcher, and falls
back to the LoggingDispatcher when Redis cannot be reached. The ledger
itself never needs Redis.

Usage:
    from marketplace_escrow.infrastructure.redis_client import (
        close_redis,
        connect_event_stream,
    )

    await connect_event_stream(settings)
    ...
    await close_redis()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from marketplace_escrow.infrastructure.notifications import (
    LoggingDispatcher,
    RedisStreamDispatcher,
    set_dispatcher,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.events import NotificationDispatcher

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def connect_event_stream(settings: Settings) -> NotificationDispatcher:
    """Install the process-wide event dispatcher and return it."""
    global _redis_client
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        await client.aclose()
        logger.warning("redis.unavailable", error=str(exc), fallback="log")
        dispatcher: NotificationDispatcher = LoggingDispatcher()
    else:
        _redis_client = client
        logger.info("redis.connected", stream=settings.event_stream_name)
        dispatcher = RedisStreamDispatcher(
            client, settings.event_stream_name, settings.event_stream_maxlen
        )
    set_dispatcher(dispatcher)
    return dispatcher


def get_redis() -> aioredis.Redis:
    if _redis_client is None:
        raise RuntimeError("Redis is not connected; call connect_event_stream() first.")
    return _redis_client


def is_redis_ready() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None
