import asyncio
from datetime import timedelta

import pytest

from newsletter.services.errors import RetryExhaustedError
from newsletter.services.retry import RetryConfig, with_retry


def run_async(coro):
    return asyncio.run(coro)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def failing(times: int, error: Exception, result="ok"):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= times:
            raise error
        return result

    return operation, calls


def test_succeeds_after_transient_failures():
    operation, calls = failing(2, ConnectionError("reset"))
    sleep = RecordingSleep()

    result = run_async(with_retry(operation, RetryConfig(), sleep=sleep))

    assert result == "ok"
    assert calls["count"] == 3
    assert sleep.delays == [1.0, 2.0]


def test_first_success_does_not_sleep():
    operation, calls = failing(0, ConnectionError("unused"))
    sleep = RecordingSleep()

    assert run_async(with_retry(operation, sleep=sleep)) == "ok"
    assert calls["count"] == 1
    assert sleep.delays == []


def test_exhaustion_reports_attempts_and_last_error():
    operation, calls = failing(10, ConnectionError("still down"))
    sleep = RecordingSleep()

    with pytest.raises(RetryExhaustedError) as exc_info:
        run_async(with_retry(operation, RetryConfig(max_attempts=3), sleep=sleep))

    error = exc_info.value
    assert calls["count"] == 3
    assert error.attempts == 3
    assert str(error) == "Operation failed after 3 attempts. Last error: still down"
    assert isinstance(error.__cause__, ConnectionError)
    assert sleep.delays == [1.0, 2.0]  # no sleep after the final attempt


def test_backoff_schedule_follows_factor():
    operation, _ = failing(3, TimeoutError("slow"))
    sleep = RecordingSleep()
    config = RetryConfig(
        max_attempts=4, delay=timedelta(milliseconds=500), backoff_factor=3.0
    )

    run_async(with_retry(operation, config, sleep=sleep))

    assert sleep.delays == pytest.approx([0.5, 1.5, 4.5])


def test_single_attempt_never_sleeps():
    operation, calls = failing(1, ConnectionError("once"))
    sleep = RecordingSleep()

    with pytest.raises(RetryExhaustedError):
        run_async(with_retry(operation, RetryConfig(max_attempts=1), sleep=sleep))
    assert calls["count"] == 1
    assert sleep.delays == []


def test_errors_outside_retry_on_propagate_immediately():
    operation, calls = failing(5, KeyError("bad input"))
    sleep = RecordingSleep()
    config = RetryConfig(retry_on=(ConnectionError,))

    with pytest.raises(KeyError):
        run_async(with_retry(operation, config, sleep=sleep))
    assert calls["count"] == 1
    assert sleep.delays == []


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryConfig(max_attempts=0)
