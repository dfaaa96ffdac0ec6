import time
import uuid
from dataclasses import dataclass
from typing import Optional

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.services.alert_service import alert_warning
from paydesk.services.redis_client import get_redis

logger = get_logger("rate_limit")

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * 60 * 1000

WINDOW_MINUTE = "minute"
WINDOW_DAY = "day"
WINDOW_PUSH = "push"
WINDOW_TELEGRAM = "telegram"

# KEYS[1] window key; ARGV: now_ms, window_ms, limit, member
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
  redis.call('ZADD', key, now, ARGV[4])
  redis.call('PEXPIRE', key, window)
  return {1, limit - count - 1}
end
return {0, 0}
"""

_unavailable_warned = False


@dataclass(frozen=True)
class WindowResult:
    allowed: bool
    remaining: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    limit: Optional[int] = None


def _window_key(identity: str, window_name: str) -> str:
    return f"paydesk:rl:{window_name}:{identity}"


async def check_window(
    identity: str,
    window_name: str,
    limit: int,
    window_ms: int,
    *,
    redis_client=None,
    now_ms: Optional[int] = None,
) -> WindowResult:
    """Sliding-window admission. Up to ``limit`` calls per window are allowed."""
    global _unavailable_warned
    redis_client = redis_client or get_redis()
    if not redis_client:
        if not _unavailable_warned:
            alert_warning("Rate limiter disabled (redis unavailable)", {"window": window_name})
            _unavailable_warned = True
        return WindowResult(allowed=True, remaining=limit)

    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    member = f"{now_ms}:{uuid.uuid4().hex[:8]}"
    try:
        allowed, remaining = await redis_client.eval(
            SLIDING_WINDOW_SCRIPT,
            1,
            _window_key(identity, window_name),
            now_ms,
            window_ms,
            limit,
            member,
        )
    except Exception as e:
        logger.warning(
            "Rate limit check failed, failing open",
            extra={"context": {"identity": identity, "window": window_name, "error": str(e)}},
        )
        return WindowResult(allowed=True, remaining=limit)

    return WindowResult(allowed=bool(int(allowed)), remaining=int(remaining))


async def check_user_rate_limit(user_id: str, *, redis_client=None) -> RateLimitDecision:
    minute_limit = settings.user_rate_limit_minute
    per_minute = await check_window(user_id, WINDOW_MINUTE, minute_limit, MINUTE_MS, redis_client=redis_client)
    if not per_minute.allowed:
        return RateLimitDecision(
            allowed=False,
            reason="per_minute",
            message=(
                "You're sending messages too quickly. Please wait a moment before trying again. "
                f"(Limit: {minute_limit}/min)"
            ),
            limit=minute_limit,
        )

    day_limit = settings.user_rate_limit_day
    per_day = await check_window(user_id, WINDOW_DAY, day_limit, DAY_MS, redis_client=redis_client)
    if not per_day.allowed:
        return RateLimitDecision(
            allowed=False,
            reason="per_day",
            message=(
                f"You've reached the daily message limit ({day_limit} messages). "
                "Contact support if you need urgent assistance."
            ),
            limit=day_limit,
        )

    return RateLimitDecision(allowed=True)
