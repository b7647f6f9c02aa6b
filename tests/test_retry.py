from __future__ import annotations

import pytest

from chat_proxy.retry import PollTimeout, poll_until


class FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def sequence_fetch(values):
    iterator = iter(values)
    calls = {"count": 0}

    async def fetch():
        calls["count"] += 1
        value = next(iterator)
        if isinstance(value, BaseException):
            raise value
        return value

    return fetch, calls


@pytest.mark.anyio
async def test_returns_first_terminal_value_without_initial_wait():
    sleep = FakeSleep()
    fetch, calls = sequence_fetch(["PROCESSING", "PROCESSING", "ACTIVE"])

    result = await poll_until(
        fetch,
        lambda value: value == "ACTIVE",
        interval=5.0,
        max_attempts=10,
        sleep=sleep,
    )

    assert result == "ACTIVE"
    assert calls["count"] == 3
    assert sleep.calls == [5.0, 5.0]


@pytest.mark.anyio
async def test_initial_delay_applies_to_first_attempt():
    sleep = FakeSleep()
    fetch, _ = sequence_fetch(["ACTIVE"])

    await poll_until(
        fetch,
        lambda value: value == "ACTIVE",
        interval=2.0,
        initial_delay=1.5,
        max_attempts=3,
        sleep=sleep,
    )

    assert sleep.calls == [1.5]


@pytest.mark.anyio
async def test_exhaustion_raises_poll_timeout_with_last_value():
    sleep = FakeSleep()
    fetch, calls = sequence_fetch(["PROCESSING"] * 3)

    with pytest.raises(PollTimeout) as excinfo:
        await poll_until(
            fetch,
            lambda value: value == "ACTIVE",
            interval=1.0,
            max_attempts=3,
            sleep=sleep,
        )

    assert excinfo.value.attempts == 3
    assert excinfo.value.last_value == "PROCESSING"
    assert calls["count"] == 3


@pytest.mark.anyio
async def test_retryable_errors_are_retried_until_final_attempt():
    sleep = FakeSleep()
    fetch, calls = sequence_fetch([ConnectionError("blip"), "ACTIVE"])

    result = await poll_until(
        fetch,
        lambda value: value == "ACTIVE",
        interval=1.0,
        max_attempts=2,
        retry_on=(ConnectionError,),
        sleep=sleep,
    )

    assert result == "ACTIVE"
    assert calls["count"] == 2


@pytest.mark.anyio
async def test_retryable_error_on_last_attempt_propagates():
    fetch, _ = sequence_fetch([ConnectionError("one"), ConnectionError("two")])

    with pytest.raises(ConnectionError, match="two"):
        await poll_until(
            fetch,
            lambda value: True,
            interval=0.0,
            max_attempts=2,
            retry_on=(ConnectionError,),
            sleep=FakeSleep(),
        )


@pytest.mark.anyio
async def test_other_errors_propagate_immediately():
    fetch, calls = sequence_fetch([KeyError("boom"), "ACTIVE"])

    with pytest.raises(KeyError):
        await poll_until(
            fetch,
            lambda value: True,
            interval=0.0,
            max_attempts=5,
            retry_on=(ConnectionError,),
            sleep=FakeSleep(),
        )
    assert calls["count"] == 1


@pytest.mark.anyio
async def test_rejects_non_positive_attempt_budget():
    fetch, _ = sequence_fetch([])

    with pytest.raises(ValueError):
        await poll_until(fetch, lambda value: True, interval=1.0, max_attempts=0)
