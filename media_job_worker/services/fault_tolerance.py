"""
Fault tolerance policies.

Provides:
- A single retry policy applied uniformly to stage unit invocations
- The redelivery cap that decides between requeue and dead-letter
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..core.exceptions import (
    UnitError,
    StalledError,
    UnitTimeoutError,
    CheckpointWriteError
)
from ..utils.logger import get_logger


def is_retryable(error: BaseException) -> bool:
    """
    Default retryable predicate.

    Transient unit failures flagged ``retryable`` and transport-level HTTP
    errors are retried. Stalls, timeouts and checkpoint failures are left to
    broker redelivery.
    """
    if isinstance(error, (StalledError, UnitTimeoutError, CheckpointWriteError)):
        return False
    if isinstance(error, UnitError):
        return error.retryable
    if isinstance(error, httpx.TransportError):
        return True
    return False


@dataclass
class RetryPolicy:
    """Configuration for in-process retry of one unit invocation."""
    max_attempts: int = 1
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable: Callable[[BaseException], bool] = field(default=is_retryable)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = min(
            self.initial_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


NO_RETRY = RetryPolicy(max_attempts=1)


async def execute_with_retry(
    func: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> Any:
    """
    Run ``func`` under a retry policy.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        policy: Retry policy to apply
        description: Label used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of the first successful attempt

    Raises:
        The last error once attempts are exhausted or the error is not retryable
    """
    logger = get_logger(__name__)
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await func()
            if attempt > 1:
                logger.info(f"{description} succeeded on attempt {attempt}")
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= policy.max_attempts or not policy.retryable(e):
                raise

            delay = policy.delay_for(attempt)
            logger.warning(f"{description} failed on attempt {attempt}/{policy.max_attempts}, retrying in {delay:.2f}s", extra={
                "error": str(e),
                "attempt": attempt
            })
            await sleep(delay)


@dataclass
class RedeliveryPolicy:
    """
    Decides what happens to a failed delivery.

    ``max_deliveries`` of 0 means redeliver forever.
    """
    nack_delay: float = 5.0
    max_deliveries: int = 10

    def should_dead_letter(self, attempt: int) -> bool:
        return self.max_deliveries > 0 and attempt >= self.max_deliveries


def policy_from_stage_config(stage_config: Any, retryable: Optional[Callable[[BaseException], bool]] = None) -> RetryPolicy:
    """Build a RetryPolicy from a StageConfig."""
    return RetryPolicy(
        max_attempts=stage_config.max_attempts,
        initial_delay=stage_config.initial_delay,
        max_delay=stage_config.max_delay,
        retryable=retryable or is_retryable
    )
