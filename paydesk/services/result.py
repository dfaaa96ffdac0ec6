from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

from paydesk.logging_config import get_logger

T = TypeVar("T")

logger = get_logger("side_effects")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T = None) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default


async def guarded(label: str, awaitable: Awaitable[T], **context: Any) -> Result[T]:
    """Await a secondary effect; failures are logged and returned, never raised."""
    try:
        return Result.success(await awaitable)
    except Exception as e:
        logger.warning(
            f"{label} failed (non-fatal)",
            extra={"context": {**context, "error": str(e)}},
        )
        return Result.failure(str(e), code=label)

