"""Exponential-backoff retry with cooperative cancellation."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from structlog import get_logger

from app.core.exceptions import RetryCancelledError, RetryExhaustedError

logger = get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay after failed attempt number ``attempt`` (1-based): base, 2*base, 4*base..."""
    return base_delay * (2 ** (attempt - 1))


async def _wait(delay: float, sleep: SleepFunc, cancel_event: asyncio.Event | None) -> None:
    """Sleep for ``delay`` seconds, returning early with an error if cancelled."""
    if cancel_event is None:
        await sleep(delay)
        return

    sleeper = asyncio.ensure_future(sleep(delay))
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()

    if cancel_event.is_set():
        raise RetryCancelledError("Retry cancelled while waiting")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    cancel_event: asyncio.Event | None = None,
    sleep: SleepFunc = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. No wait follows the final attempt, so the
    worst-case wall time is ``base_delay * (2**(max_attempts - 1) - 1)``.

    Args:
        operation: Zero-argument coroutine factory to call on every attempt
        max_attempts: Upper bound on calls to ``operation``
        base_delay: Delay in seconds after the first failure; doubles each time
        retry_on: Exception types treated as transient
        cancel_event: Token that aborts the loop when set
        sleep: Sleep implementation, injectable for tests
        operation_name: Name used in log events

    Returns:
        The first successful result

    Raises:
        RetryExhaustedError: If every attempt failed with a transient error
        RetryCancelledError: If ``cancel_event`` was set
    """
    last_error: BaseException | None = None

    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise RetryCancelledError(f"{operation_name} cancelled before attempt {attempt}")

        try:
            return await operation()
        except retry_on as e:
            last_error = e
            logger.warning(
                "retry_attempt_failed",
                operation=operation_name,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(e),
            )

        if attempt < max_attempts:
            await _wait(backoff_delay(attempt, base_delay), sleep, cancel_event)

    assert last_error is not None
    raise RetryExhaustedError(max_attempts, last_error)
