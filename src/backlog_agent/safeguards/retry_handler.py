"""Retry with exponential backoff for transient provider failures."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryHandler:
    """
    Exponential backoff schedule.

    Formula: initial * multiplier^(attempt-1), capped at max_backoff.
    Defaults give 1s, 2s, 4s, ... up to 10s.
    """

    def __init__(
        self,
        initial_backoff: float = 1.0,
        max_backoff: float = 10.0,
        multiplier: float = 2,
        max_attempts: int = 3,
    ):
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.max_attempts = max_attempts

    def calculate_backoff(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        backoff = self.initial_backoff * (self.multiplier ** (attempt - 1))
        return min(backoff, self.max_backoff)

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        is_transient: Callable[[T], bool],
        is_transient_error: Optional[Callable[[Exception], bool]] = None,
        description: str = "operation",
    ) -> T:
        return await retry_async(
            operation,
            max_attempts=self.max_attempts,
            backoff_fn=self.calculate_backoff,
            is_transient=is_transient,
            is_transient_error=is_transient_error,
            description=description,
        )


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    backoff_fn: Callable[[int], float],
    is_transient: Callable[[T], bool],
    is_transient_error: Optional[Callable[[Exception], bool]] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation(attempt)`` until it yields a non-transient result.

    A result for which ``is_transient`` is true is retried after
    ``backoff_fn(attempt)`` seconds; once attempts are exhausted that last
    result is returned so the caller can surface it. Exceptions are retried
    only when ``is_transient_error`` accepts them; otherwise, and after the
    final attempt, they propagate.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number
        max_attempts: Total attempts including the first
        backoff_fn: Attempt number -> seconds to wait before the next attempt
        is_transient: Whether a returned result should be retried
        is_transient_error: Whether a raised exception should be retried
        description: Label for log messages
        sleep: Injected for tests
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    result: Optional[T] = None
    for attempt in range(1, max_attempts + 1):
        try:
            result = await operation(attempt)
        except Exception as e:
            if is_transient_error is None or not is_transient_error(e) or attempt == max_attempts:
                raise
            delay = backoff_fn(attempt)
            logger.warning(
                f"{description} failed with transient error (attempt {attempt}/{max_attempts}): "
                f"{e}. Retrying in {delay:.1f}s"
            )
            await sleep(delay)
            continue

        if not is_transient(result):
            return result

        if attempt < max_attempts:
            delay = backoff_fn(attempt)
            logger.warning(
                f"{description} produced a transient result (attempt {attempt}/{max_attempts}), "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)

    logger.error(f"{description} still transient after {max_attempts} attempts")
    return result
