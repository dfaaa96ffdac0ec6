import pytest

from paydesk.services.result import Result, guarded


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("test value")
        assert result.ok is True
        assert result.value == "test value"
        assert result.error is None

    def test_success_with_different_types(self):
        assert Result.success(42).value == 42
        assert Result.success({"key": "value"}).value == {"key": "value"}


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("No pending partial refund offer", "invalid_stage")
        assert result.ok is False
        assert result.error == "No pending partial refund offer"
        assert result.error_code == "invalid_stage"
        assert result.value is None

    def test_failure_default_code(self):
        assert Result.failure("Error message").error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        assert Result.success(None).unwrap_or("default") is None


class TestGuarded:
    @pytest.mark.asyncio
    async def test_returns_value(self):
        async def effect():
            return "sent"

        result = await guarded("push", effect())
        assert result.ok is True
        assert result.value == "sent"

    @pytest.mark.asyncio
    async def test_swallows_exception(self):
        async def effect():
            raise RuntimeError("fcm down")

        result = await guarded("push", effect(), user_id="u1")
        assert result.ok is False
        assert result.error == "fcm down"
        assert result.error_code == "push"
