"""Bounded polling helper for provider resources that settle asynchronously."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeout(Exception):
    """Raised when the attempt budget is exhausted without a terminal value."""

    def __init__(self, attempts: int, last_value: object | None):
        super().__init__(
            f"Resource did not reach a terminal state after {attempts} attempt(s)"
        )
        self.attempts = attempts
        self.last_value = last_value


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_terminal: Callable[[T], bool],
    *,
    interval: float,
    max_attempts: int,
    initial_delay: float = 0.0,
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fetch`` until ``is_terminal`` accepts its result.

    The first attempt waits ``initial_delay`` seconds (immediately by default);
    later attempts wait ``interval`` seconds.
    Exceptions listed in ``retry_on`` count as a failed attempt and are retried,
    except on the final attempt, where they propagate. Anything else propagates
    at once. Exhausting ``max_attempts`` raises :class:`PollTimeout`.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_value: T | None = None
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            await sleep(interval)
        elif initial_delay > 0:
            await sleep(initial_delay)
        try:
            value = await fetch()
        except retry_on as exc:
            if attempt == max_attempts:
                raise
            logger.warning(
                "Poll attempt %d/%d failed, retrying in %.1fs: %s",
                attempt,
                max_attempts,
                interval,
                exc,
            )
            continue
        if is_terminal(value):
            return value
        last_value = value
        logger.debug("Poll attempt %d/%d not terminal yet", attempt, max_attempts)

    raise PollTimeout(max_attempts, last_value)


__all__ = ["PollTimeout", "poll_until"]
