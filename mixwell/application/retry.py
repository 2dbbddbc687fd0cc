import logging
import time
from typing import Callable, Optional, TypeVar

from mixwell.application.locks import Deadline
from mixwell.domain.errors import RateLimited, TemporaryFailure


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _outlasts(deadline: Optional[Deadline], wait_s: float) -> bool:
    if deadline is None:
        return False
    remaining = deadline.remaining()
    return remaining is not None and wait_s >= remaining


def call_with_retry(fn: Callable[[], T],
                    label: str = "operation",
                    max_retries: int = 3,
                    max_rate_limit_waits: int = 5,
                    sleep: Callable[[float], None] = time.sleep,
                    max_wait_s: Optional[float] = None,
                    deadline: Optional[Deadline] = None) -> T:
    """Run ``fn`` retrying transient platform failures.

    Rate limiting waits the provider-suggested time and does not count as a
    retry attempt, but is itself bounded by ``max_rate_limit_waits``. Other
    transient failures back off exponentially: 1s, 2s, 4s, ...
    A wait that would outlast ``deadline`` is not taken; the failure is
    re-raised instead.

    Args:
        fn: Zero-argument callable to run
        label: Name used in log messages
        max_retries: Retries after the first TemporaryFailure
        max_rate_limit_waits: Rate-limit waits before giving up
        sleep: Sleep function (tests pass a no-op)
        max_wait_s: Cap for a single wait
        deadline: Overall time budget the waits must fit in

    Returns:
        Whatever ``fn`` returns

    Raises:
        RateLimited: If the rate-limit budget is exhausted or the wait outlasts the deadline
        TemporaryFailure: If max retries exceeded or the backoff outlasts the deadline
    """
    attempt = 0
    rate_limit_waits = 0

    while True:
        try:
            return fn()

        except RateLimited as e:
            rate_limit_waits += 1
            if rate_limit_waits > max_rate_limit_waits:
                logger.error(f"Rate limit budget exhausted for {label}")
                raise

            wait_s = e.retry_after_ms / 1000.0
            if max_wait_s is not None:
                wait_s = min(wait_s, max_wait_s)
            if _outlasts(deadline, wait_s):
                logger.error(f"Rate limited on {label}, {wait_s}s wait exceeds remaining time budget")
                raise
            logger.warning(f"Rate limited on {label}, waiting {e.retry_after_ms}ms")
            sleep(wait_s)

        except TemporaryFailure as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(f"Max retries exceeded for {label}: {e}")
                raise

            backoff_time = 2 ** (attempt - 1)
            if max_wait_s is not None:
                backoff_time = min(backoff_time, max_wait_s)
            if _outlasts(deadline, backoff_time):
                logger.error(f"{label} failed, {backoff_time}s backoff exceeds remaining time budget: {e}")
                raise
            logger.warning(f"{label} failed (attempt {attempt}), retrying in {backoff_time}s: {e}")
            sleep(backoff_time)
