from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import RetryExhausted, TransientResourceBusy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FixedBackoff:
    delay: float

    def __call__(self, attempt: int) -> float:
        return self.delay


@dataclass(frozen=True)
class LinearBackoff:
    """Delay grows with the attempt number: base * attempt."""

    base: float

    def __call__(self, attempt: int) -> float:
        return self.base * attempt


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    max_attempts: int,
    backoff: Callable[[int], float],
    retry_on: Tuple[Type[BaseException], ...] = (TransientResourceBusy,),
    before_attempt: Optional[Callable[[int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    describe: str = "operation",
) -> T:
    """Run operation until it succeeds or max_attempts is reached.

    Only exceptions listed in retry_on are retried; anything else propagates
    after the first attempt. Exhaustion raises RetryExhausted chained to the
    last error.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        if before_attempt is not None:
            before_attempt(attempt)
        try:
            return operation()
        except retry_on as e:
            last = e
            if attempt == max_attempts:
                break
            delay = backoff(attempt)
            logger.warning(
                "%s busy (attempt %d/%d): %s; retrying in %.1fs",
                describe,
                attempt,
                max_attempts,
                e,
                delay,
            )
            sleep(delay)

    raise RetryExhausted(
        f"{describe} failed after {max_attempts} attempts: {last}",
        attempts=max_attempts,
        last_error=last,
    ) from last
