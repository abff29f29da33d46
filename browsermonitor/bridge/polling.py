"""Bounded polling with typed results."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Detected(Generic[T]):
    """The check produced a value."""
    value: T
    attempts: int


@dataclass(frozen=True)
class TimedOut:
    """The check never produced a value."""
    attempts: int


PollResult = Union[Detected, TimedOut]


async def poll_with_backoff(
    check: Callable[[], Awaitable[Optional[Any]]],
    interval: float = 0.5,
    attempts: int = 10,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
) -> PollResult:
    """Run ``check`` until it returns a non-None value or attempts run out.

    Args:
        check: Async callable returning a value, or None to keep polling
        interval: Initial delay between attempts in seconds
        attempts: Maximum number of checks
        backoff: Multiplier applied to the delay after each attempt
        max_interval: Upper bound for the delay

    Returns:
        Detected(value, attempts) or TimedOut(attempts)
    """
    delay = interval
    for attempt in range(1, attempts + 1):
        try:
            value = await check()
        except Exception as e:
            logger.debug(f"Poll check failed on attempt {attempt}: {e}")
            value = None

        if value is not None:
            return Detected(value=value, attempts=attempt)

        if attempt < attempts:
            await asyncio.sleep(delay)
            delay *= backoff
            if max_interval is not None:
                delay = min(delay, max_interval)

    return TimedOut(attempts=attempts)
