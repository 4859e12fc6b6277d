# shopguard/core/retry.py
"""
Bounded retry for remote calls.

Also hosts the time-bounded call helper.

Retry outcomes are split three ways so callers can tell them apart:
- success: the call's result is returned
- give up: an exception matching ``give_up_on`` propagates immediately
  (e.g. "row not found", which the caller handles by creating the row)
- transient: an exception matching ``retry_on`` is retried until the
  attempt budget is spent, then the last one propagates
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from shopguard.core.exceptions import NetworkError, timeout_error

logger = logging.getLogger(__name__)

T = TypeVar('T')
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and delay schedule"""
    max_attempts: int = 3
    delay: float = 1.0
    backoff: float = 1.0          # 1.0 = fixed delay, 2.0 = doubling
    max_delay: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt"""
        value = self.delay * (self.backoff ** (attempt - 1))
        if self.max_delay is not None:
            value = min(value, self.max_delay)
        return value


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    retry_on: Tuple[Type[BaseException], ...] = (NetworkError,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    sleep: Sleep = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """
    Run ``operation`` with bounded retries.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt budget and delays
        retry_on: Exception types treated as transient
        give_up_on: Exception types that end the loop at once (checked first)
        sleep: Awaitable sleep, injectable for tests
        operation_name: Label used in log lines

    Raises:
        The give-up exception, the last transient exception, or anything
        not listed in either tuple.
    """
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except give_up_on:
            raise
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    f"❌ {operation_name} failed after {attempt} attempts: {e}"
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"🔄 {operation_name} attempt {attempt}/{policy.max_attempts} failed "
                f"({type(e).__name__}), retrying in {delay:.1f}s"
            )
            await sleep(delay)


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    operation_name: str = "operation",
) -> T:
    """
    Await a remote call with a hard time budget.

    Raises:
        RemoteTimeoutError: when the budget runs out; the call is cancelled
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"⏱️ {operation_name} timed out after {timeout}s")
        raise timeout_error(operation_name, timeout) from None
