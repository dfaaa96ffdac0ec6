from typing import Optional

import redis.asyncio as redis_async

from paydesk.config import settings
from paydesk.logging_config import get_logger

logger = get_logger("redis_client")

_redis_client: Optional[redis_async.Redis] = None
_redis_url: Optional[str] = None


def get_redis() -> Optional[redis_async.Redis]:
    """Shared async client, or None when Redis is not configured."""
    global _redis_client, _redis_url
    redis_url = settings.redis_url
    if not redis_url:
        return None
    if _redis_client is not None and _redis_url == redis_url:
        return _redis_client
    try:
        timeout = settings.redis_socket_timeout_seconds
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
        )
        _redis_url = redis_url
    except Exception as e:
        logger.warning(f"Redis client init failed: {e}")
        _redis_client = None
        _redis_url = None
    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_url
    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
    except Exception as e:
        logger.warning(f"Redis close failed: {e}")
    _redis_client = None
    _redis_url = None
