import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from bulkloader.errors import TransientRemoteError


T = TypeVar("T")


class RetryDecision(Enum):
    RETRY = "retry"
    ABORT = "abort"


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Exponential delay after the given failed attempt (1-based), capped."""
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)


def classify_remote_error(exc: Exception) -> RetryDecision:
    if isinstance(exc, TransientRemoteError):
        return RetryDecision.RETRY
    return RetryDecision.ABORT


async def run_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    classify: Callable[[Exception], RetryDecision] = classify_remote_error,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    last_error: Exception | None = None
    attempt = 0

    while attempt < policy.max_attempts:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            if classify(exc) is RetryDecision.ABORT or attempt >= policy.max_attempts:
                break
            await sleep(policy.delay_for(attempt))

    raise RetryExhaustedError(str(last_error), attempts=attempt) from last_error
