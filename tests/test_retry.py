import asyncio

import pytest

from bulkloader.errors import SemanticRemoteError, TransientRemoteError
from bulkloader.retry import (
    RetryDecision,
    RetryExhaustedError,
    RetryPolicy,
    classify_remote_error,
    run_with_retries,
)


class Flaky:
    def __init__(self, errors: list[Exception]) -> None:
        self.errors = errors
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


async def no_sleep(seconds: float) -> None:
    return None


def test_classify_remote_error() -> None:
    assert classify_remote_error(TransientRemoteError("boom", 503)) is RetryDecision.RETRY
    assert classify_remote_error(SemanticRemoteError("bad", 400)) is RetryDecision.ABORT
    assert classify_remote_error(KeyError("id")) is RetryDecision.ABORT


def test_transient_error_recovers_on_second_attempt() -> None:
    fn = Flaky([TransientRemoteError("timeout")])

    result = asyncio.run(run_with_retries(fn, policy=RetryPolicy(max_attempts=3), sleep=no_sleep))

    assert result == "ok"
    assert fn.calls == 2


def test_semantic_error_aborts_immediately() -> None:
    fn = Flaky([SemanticRemoteError("Bad request!", 400)])
    failures: list[int] = []

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(
            run_with_retries(
                fn,
                policy=RetryPolicy(max_attempts=5),
                on_attempt_failure=lambda attempt, exc: failures.append(attempt),
                sleep=no_sleep,
            )
        )

    assert fn.calls == 1
    assert failures == [1]
    assert exc_info.value.attempts == 1
    assert isinstance(exc_info.value.__cause__, SemanticRemoteError)


def test_transient_errors_exhaust_attempt_budget() -> None:
    fn = Flaky([TransientRemoteError("503")] * 5)
    delays: list[float] = []

    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(
            run_with_retries(
                fn,
                policy=RetryPolicy(max_attempts=3, backoff_seconds=1, max_backoff_seconds=10),
                sleep=record_sleep,
            )
        )

    assert fn.calls == 3
    assert exc_info.value.attempts == 3
    assert delays == [1, 2]


def test_backoff_is_capped() -> None:
    policy = RetryPolicy(max_attempts=10, backoff_seconds=1, max_backoff_seconds=5)

    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [1, 2, 4, 5, 5]


def test_policy_requires_an_attempt() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
