from __future__ import annotations

import asyncio
from enum import Enum
import time
from typing import Awaitable, Callable


class PollOutcome(str, Enum):
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"


class OperationCancelledError(RuntimeError):
    """Raised when a poll loop observes its cancel event."""


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    *,
    interval: float,
    ceiling: float,
    cancel_event: asyncio.Event | None = None,
    delay_first: bool = False,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    """Re-evaluate ``predicate`` every ``interval`` seconds until it holds or ``ceiling`` elapses.

    ``delay_first`` sleeps once before the first evaluation, for remote state that
    cannot have changed yet. Setting the cancel event interrupts a pending sleep, and
    the event is checked again before every evaluation. ``clock`` and ``sleep`` are
    injectable so tests never wait.
    """
    if interval <= 0:
        raise ValueError("interval must be > 0")
    if ceiling < 0:
        raise ValueError("ceiling must be >= 0")

    deadline = clock() + ceiling
    if delay_first:
        await _sleep_or_cancel(sleep, interval, cancel_event)

    while True:
        _raise_if_cancelled(cancel_event)
        if await predicate():
            return PollOutcome.SATISFIED

        remaining = deadline - clock()
        if remaining <= 0:
            return PollOutcome.TIMED_OUT
        await _sleep_or_cancel(sleep, min(interval, remaining), cancel_event)


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("operation was cancelled")


async def _sleep_or_cancel(
    sleep: Callable[[float], Awaitable[None]],
    seconds: float,
    cancel_event: asyncio.Event | None,
) -> None:
    if cancel_event is None:
        await sleep(seconds)
        return

    sleeper = asyncio.ensure_future(sleep(seconds))
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()

    if sleeper.done():
        sleeper.result()
    _raise_if_cancelled(cancel_event)
