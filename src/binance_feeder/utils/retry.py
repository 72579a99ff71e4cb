"""Retry utilities with exponential backoff."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delays(
    initial_delay: float,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True
):
    """Yield an endless sequence of capped, optionally jittered delays."""
    delay = initial_delay
    while True:
        if jitter:
            # ±25% of the delay
            jitter_range = delay * 0.25
            actual_delay = delay + random.uniform(-jitter_range, jitter_range)
        else:
            actual_delay = delay
        yield max(0.0, min(actual_delay, max_delay))
        delay *= backoff_factor


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,),
    stop_event: Optional[asyncio.Event] = None
) -> T:
    """
    Await ``func`` with exponential backoff between failed attempts.

    Args:
        func: Zero-argument coroutine function to execute
        max_attempts: Maximum number of attempts
        initial_delay: Delay before the second attempt (seconds)
        max_delay: Upper bound for any single delay (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add random jitter to delays
        exceptions: Exception types that trigger a retry
        stop_event: When set during a backoff wait, the last error is re-raised
            immediately instead of waiting out the delay

    Returns:
        Result of the first successful call

    Raises:
        The last exception encountered if all attempts fail
    """
    delays = backoff_delays(initial_delay, max_delay, backoff_factor, jitter)

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except exceptions as e:
            if attempt == max_attempts:
                logger.error(f"Function failed after {max_attempts} attempts: {e}")
                raise

            actual_delay = next(delays)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {actual_delay:.2f} seconds..."
            )

            if stop_event is None:
                await asyncio.sleep(actual_delay)
            elif await wait_for_stop(stop_event, actual_delay):
                raise

    raise ValueError("max_attempts must be at least 1")


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds; return True if ``stop_event`` fired."""
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout)
        return True
    except asyncio.TimeoutError:
        return False
