"""
Lead Sentinel — retrying-call helper.

One helper, parameterised by attempts, backoff schedule and a retryable
predicate. Used by the token exchange and by every Gmail API call.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

logger = logging.getLogger("sentinel.leads.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff: Sequence[float]

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given 0-based failed attempt (last entry repeats)."""
        if not self.backoff:
            return 0.0
        return self.backoff[min(attempt, len(self.backoff) - 1)]


def _always(exc: BaseException) -> bool:
    return True


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] = _always,
    delay_hint: Optional[Callable[[BaseException], Optional[float]]] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> T:
    """
    Call fn until it returns, retrying exceptions accepted by `retryable`.

    Between attempts sleeps `delay_hint(exc)` when it returns a value,
    otherwise the policy's ladder entry for that attempt. Re-raises the last
    exception once attempts are exhausted; non-retryable exceptions
    propagate immediately.
    """
    last_exc: Optional[BaseException] = None
    for attempt in range(policy.max_attempts):
        try:
            return fn()
        except Exception as e:
            if not retryable(e):
                raise
            last_exc = e
            if attempt + 1 >= policy.max_attempts:
                break
            delay = delay_hint(e) if delay_hint else None
            if delay is None:
                delay = policy.delay_for(attempt)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{policy.max_attempts}): "
                f"{e} — retrying in {delay:.1f}s"
            )
            sleep(delay)

    logger.error(f"{label} exhausted {policy.max_attempts} attempts: {last_exc}")
    raise last_exc
