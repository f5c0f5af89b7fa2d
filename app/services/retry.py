import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from app.services.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings (lower case) that signal capacity exhaustion, an unavailable
# service or rate limiting in provider error messages.
RETRYABLE_MARKERS = (
    "overloaded",
    "service unavailable",
    "temporarily unavailable",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "resource exhausted",
    "resource_exhausted",
    "capacity",
    "429",
    "503",
    "529",
)


def is_retryable(error: object) -> bool:
    """Return True when ``error`` looks like a transient capacity failure.

    Heuristic on the message text only; anything unrecognized is permanent.
    """
    if error is None or isinstance(error, RetryExhaustedError):
        return False
    try:
        text = str(error).lower()
    except Exception:
        return False
    return any(marker in text for marker in RETRYABLE_MARKERS)


@dataclass(frozen=True)
class RetryNotice:
    """Emitted before waiting for the next attempt."""

    attempt: int
    max_attempts: int
    delay: float
    error: BaseException

    @property
    def next_attempt(self) -> int:
        return self.attempt + 1


RetryObserver = Callable[[RetryNotice], Awaitable[None] | None]


async def notify(observer: RetryObserver | None, notice: RetryNotice) -> None:
    """Call a sync or async observer, never letting it break the retry loop."""
    if observer is None:
        return
    try:
        result = observer(notice)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Retry observer failed")


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    delays: Sequence[float],
    *,
    on_retry: RetryObserver | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` with up to ``len(delays) + 1`` sequential attempts.

    A retryable failure on attempt ``k`` waits ``delays[k - 1]`` before attempt
    ``k + 1``. A permanent failure is re-raised as is. When the last attempt
    still fails retryably, ``RetryExhaustedError`` is raised from it.
    """
    max_attempts = len(delays) + 1
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                logger.error("%s failed permanently on attempt %d: %s", label, attempt, exc)
                raise
            if attempt >= max_attempts:
                logger.error("%s exhausted %d attempts: %s", label, attempt, exc)
                raise RetryExhaustedError(attempt, exc) from exc

            delay = delays[attempt - 1]
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                label, attempt, max_attempts, exc, delay,
            )
            await notify(on_retry, RetryNotice(attempt, max_attempts, delay, exc))
            await sleep(delay)
            attempt += 1
