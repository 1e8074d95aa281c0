from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import SubmissionExhausted, TransientSubmissionError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped."""
    return min(max_seconds, base_seconds * (2 ** (attempt - 1)))


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_attempts: int,
    base_seconds: float = 0.5,
    max_seconds: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[int, Optional[BaseException]], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> T:
    """Call `fn` until it succeeds or `max_attempts` is reached.

    Only `TransientSubmissionError` is retried; anything else propagates
    immediately. `on_attempt(n, error)` is invoked after every attempt,
    with `error=None` on success. When `should_stop()` turns true between
    attempts the last transient error is re-raised instead of exhausting.
    """

    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got: {max_attempts}")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            result = fn()
        except TransientSubmissionError as e:
            last_error = e
            if on_attempt is not None:
                on_attempt(attempt, e)
            if attempt >= max_attempts:
                break
            if should_stop is not None and should_stop():
                raise
            delay = backoff_delay(attempt, base_seconds=base_seconds, max_seconds=max_seconds)
            logger.warning("transient_failure_retrying", extra={"attempt": attempt, "delay": delay, "error": str(e)})
            sleep(delay)
            continue
        if on_attempt is not None:
            on_attempt(attempt, None)
        return result

    raise SubmissionExhausted(attempt, last_error)
