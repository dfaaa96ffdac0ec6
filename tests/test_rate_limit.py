from unittest.mock import patch

import pytest

from paydesk.services import rate_limit_service
from paydesk.services.rate_limit_service import MINUTE_MS, check_user_rate_limit, check_window

KEY = "paydesk:rl:minute:u1"


class TestSlidingWindow:
    @pytest.mark.asyncio
    async def test_exactly_limit_calls_allowed(self, lua_redis):
        results = [
            await check_window("u1", "minute", 3, MINUTE_MS, redis_client=lua_redis, now_ms=1_000 + i)
            for i in range(4)
        ]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results[:3]] == [2, 1, 0]

    @pytest.mark.asyncio
    async def test_window_resets_after_elapsed(self, lua_redis):
        for i in range(3):
            await check_window("u1", "minute", 3, MINUTE_MS, redis_client=lua_redis, now_ms=1_000 + i)
        blocked = await check_window("u1", "minute", 3, MINUTE_MS, redis_client=lua_redis, now_ms=30_000)
        partly = await check_window("u1", "minute", 3, MINUTE_MS, redis_client=lua_redis, now_ms=1_000 + MINUTE_MS)
        later = await check_window("u1", "minute", 3, MINUTE_MS, redis_client=lua_redis, now_ms=1_002 + MINUTE_MS)

        assert blocked.allowed is False
        assert partly.allowed is True
        assert later.allowed is True

    @pytest.mark.asyncio
    async def test_rejected_calls_do_not_extend_the_window(self, lua_redis):
        for i in range(2):
            await check_window("u1", "minute", 2, MINUTE_MS, redis_client=lua_redis, now_ms=i)
        for t in range(10, 50, 10):
            await check_window("u1", "minute", 2, MINUTE_MS, redis_client=lua_redis, now_ms=t)

        assert await lua_redis.zcard(KEY) == 2
        assert [score for _, score in await lua_redis.zrange(KEY, 0, -1, withscores=True)] == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_admitted_call_sets_key_expiry(self, lua_redis):
        await check_window("u1", "minute", 2, MINUTE_MS, redis_client=lua_redis)

        ttl = await lua_redis.pttl(KEY)
        assert 0 < ttl <= MINUTE_MS

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, lua_redis):
        await check_window("u1", "minute", 1, MINUTE_MS, redis_client=lua_redis, now_ms=1)

        assert (await check_window("u2", "minute", 1, MINUTE_MS, redis_client=lua_redis, now_ms=2)).allowed is True
        assert (await check_window("u1", "minute", 1, MINUTE_MS, redis_client=lua_redis, now_ms=3)).allowed is False


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_redis_error_allows(self, fake_redis):
        fake_redis.fail = True

        result = await check_window("u1", "minute", 1, MINUTE_MS, redis_client=fake_redis)

        assert result.allowed is True

    @pytest.mark.asyncio
    @patch("paydesk.services.rate_limit_service.alert_warning")
    @patch("paydesk.services.rate_limit_service.get_redis", return_value=None)
    async def test_missing_redis_allows_and_alerts_once(self, _get_redis, mock_alert):
        rate_limit_service._unavailable_warned = False

        first = await check_window("u1", "minute", 1, MINUTE_MS)
        second = await check_window("u1", "minute", 1, MINUTE_MS)

        assert first.allowed and second.allowed
        mock_alert.assert_called_once()


class TestUserRateLimit:
    @pytest.mark.asyncio
    @patch("paydesk.services.rate_limit_service.settings")
    async def test_minute_window_checked_first(self, mock_settings, lua_redis):
        mock_settings.user_rate_limit_minute = 2
        mock_settings.user_rate_limit_day = 100

        await check_user_rate_limit("u1", redis_client=lua_redis)
        await check_user_rate_limit("u1", redis_client=lua_redis)
        decision = await check_user_rate_limit("u1", redis_client=lua_redis)

        assert decision.allowed is False
        assert decision.reason == "per_minute"
        assert "2/min" in decision.message

    @pytest.mark.asyncio
    @patch("paydesk.services.rate_limit_service.settings")
    async def test_day_window(self, mock_settings, lua_redis):
        mock_settings.user_rate_limit_minute = 100
        mock_settings.user_rate_limit_day = 1

        assert (await check_user_rate_limit("u1", redis_client=lua_redis)).allowed is True
        decision = await check_user_rate_limit("u1", redis_client=lua_redis)

        assert decision.allowed is False
        assert decision.reason == "per_day"
