"""
Exponential backoff shared by every outbound call.

The language-model service, the OCR delegate and the remote mirror all go
through `call_with_backoff`. Only errors accepted by the `retryable`
predicate are retried (rate-limit signals by default); anything else is
re-raised untouched on the first attempt.
"""
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from errors import RateLimitExhausted

logger = logging.getLogger(__name__)


RATE_LIMIT_STATUS = 429
RATE_LIMIT_CODES = {"insufficient_quota", "rate_limit_exceeded", "rateLimitExceeded", "userRateLimitExceeded"}


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry budget for rate-limited calls.

    Delay before retry N (1-based) is base_delay * multiplier ** (N - 1),
    so the defaults wait 5s, 10s, 20s, 40s, 80s.
    """
    max_retries: int = 5
    base_delay: float = 5.0
    multiplier: float = 2.0

    @classmethod
    def from_env(cls) -> "BackoffPolicy":
        return cls(
            max_retries=int(os.getenv("BACKOFF_MAX_RETRIES", "5")),
            base_delay=float(os.getenv("BACKOFF_BASE_DELAY_SECONDS", "5")),
            multiplier=float(os.getenv("BACKOFF_MULTIPLIER", "2")),
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay in seconds before the given retry (1-based)."""
        return self.base_delay * (self.multiplier ** (retry_number - 1))


def is_rate_limit_error(exc: BaseException) -> bool:
    """
    Detect a rate-limit signal on an exception from any of our collaborators.

    Covers OpenAI/Anthropic SDK errors (status_code / code attributes),
    httpx status errors, and MirrorAPIError.
    """
    if getattr(exc, "is_rate_limited", False):
        return True

    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if status == RATE_LIMIT_STATUS:
        return True

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code in RATE_LIMIT_CODES:
        return True

    return False


def call_with_backoff(
    operation: Callable[[], Any],
    policy: BackoffPolicy,
    operation_name: str = "operation",
    sleep_func: Callable[[float], None] = time.sleep,
    retryable: Callable[[BaseException], bool] = is_rate_limit_error,
    on_backoff: Optional[Callable[[int, float, BaseException], None]] = None,
) -> Any:
    """
    Run an operation, retrying retryable failures with exponential backoff.

    Args:
        operation: Zero-argument callable performing the remote call
        policy: Retry budget
        operation_name: Name for logging and error messages
        sleep_func: Sleep function (injectable for testing)
        retryable: Predicate deciding whether an exception is retried
        on_backoff: Optional hook called as (retry_number, delay, exc)

    Returns:
        Whatever the operation returns.

    Raises:
        RateLimitExhausted: If the retry budget is used up
        Exception: Any non-retryable error, unchanged
    """
    retries = 0
    while True:
        try:
            result = operation()
            if retries:
                logger.info(f"{operation_name} succeeded after {retries} retries")
            return result
        except Exception as exc:
            if not retryable(exc):
                raise

            retries += 1
            if retries > policy.max_retries:
                logger.error(f"{operation_name} still rate limited after {policy.max_retries} retries")
                raise RateLimitExhausted(
                    f"{operation_name} failed after maximum retry attempts due to rate limits",
                    attempts=retries,
                ) from exc

            delay = policy.delay_for(retries)
            logger.warning(
                f"{operation_name} rate limited; retry {retries}/{policy.max_retries} in {delay:g}s"
            )
            if on_backoff:
                on_backoff(retries, delay, exc)
            sleep_func(delay)
