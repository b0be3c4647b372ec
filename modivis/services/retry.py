"""Retry combinator with exponential backoff.

``retry_async`` runs an async operation under a RetryPolicy and returns a
tagged RetryOutcome instead of raising, so callers decide what an exhausted
or fatal result means for them.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

from modivis.errors import RateLimitError


logger = logging.getLogger(__name__)


SleepFunc = Callable[[float], Awaitable[Any]]
RetryCallback = Callable[[int, int, float, BaseException], Any]


def _default_is_retryable(error: BaseException) -> bool:
    return isinstance(error, RateLimitError)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] = _default_is_retryable

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        return self.base_delay * (self.multiplier ** (retry_number - 1))

    def schedule(self) -> Tuple[float, ...]:
        """Every delay the policy can insert, in order."""
        return tuple(self.delay_for(n) for n in range(1, self.max_attempts))


class RetryStatus(str, enum.Enum):
    """Outcome tags."""
    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"


@dataclass
class RetryOutcome:
    """Result of ``retry_async``."""
    status: RetryStatus
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    delays: List[float] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is RetryStatus.SUCCESS


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    sleep: SleepFunc = asyncio.sleep,
    on_retry: Optional[RetryCallback] = None,
    handled_errors: Tuple[Type[BaseException], ...] = (Exception,),
) -> RetryOutcome:
    """
    Run ``operation`` until it succeeds, fails fatally, or the budget runs out.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt budget, backoff and retry classification
        sleep: Awaitable delay, injectable for tests
        on_retry: Called as (attempt, max_attempts, delay, error) before each backoff
        handled_errors: Exception types captured into the outcome; anything else propagates

    Returns:
        RetryOutcome: SUCCESS with the value, RETRYABLE_ERROR when every
        attempt hit a retryable error, FATAL_ERROR on the first non-retryable one
    """
    delays: List[float] = []
    attempt = 0

    while True:
        attempt += 1
        try:
            value = await operation()
        except handled_errors as e:
            if not policy.is_retryable(e):
                logger.warning(f"Attempt {attempt}/{policy.max_attempts} failed fatally: {e}")
                return RetryOutcome(
                    status=RetryStatus.FATAL_ERROR, error=e, attempts=attempt, delays=delays
                )

            if attempt >= policy.max_attempts:
                logger.warning(f"Retries exhausted after {attempt} attempts: {e}")
                return RetryOutcome(
                    status=RetryStatus.RETRYABLE_ERROR, error=e, attempts=attempt, delays=delays
                )

            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} hit a retryable error, "
                f"retrying in {delay * 1000:.0f}ms: {e}"
            )
            if on_retry is not None:
                on_retry(attempt, policy.max_attempts, delay, e)
            delays.append(delay)
            await sleep(delay)
            continue

        return RetryOutcome(
            status=RetryStatus.SUCCESS, value=value, attempts=attempt, delays=delays
        )
