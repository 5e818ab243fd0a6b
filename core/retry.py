"""
Bounded retry with an optional fallback endpoint.

Sleep is injected so retry behaviour is testable without real timers.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(base_delay: float, attempt: int) -> float:
    """delay * attempt, attempt counted from 1."""
    return base_delay * attempt


def exponential_backoff(base_delay: float, attempt: int) -> float:
    return base_delay * (2 ** (attempt - 1))


@dataclass
class RetryPolicy:
    """
    Call ``primary`` up to ``max_attempts`` times, then ``fallback`` once.

    Between primary attempts the policy sleeps ``backoff(base_delay, attempt)``
    where attempt is the 1-based number of the attempt that just failed. The
    last error is re-raised when every option is exhausted.
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    backoff: Callable[[float, int], float] = linear_backoff
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    name: str = "retry"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def run(
        self,
        primary: Callable[[], T],
        fallback: Optional[Callable[[], T]] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> T:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return primary()
            except retry_on as exc:
                last_error = exc
                logger.warning(
                    "%s: attempt %d/%d failed: %s",
                    self.name, attempt, self.max_attempts, exc,
                )
                if attempt < self.max_attempts:
                    delay = self.backoff(self.base_delay, attempt)
                    if delay > 0:
                        self.sleep(delay)

        if fallback is not None:
            try:
                result = fallback()
                logger.info("%s: fallback succeeded after %d primary failures", self.name, self.max_attempts)
                return result
            except retry_on as exc:
                logger.warning("%s: fallback failed: %s", self.name, exc)
                last_error = exc

        if last_error is None:
            raise RuntimeError(f"{self.name}: no attempt was made (max_attempts={self.max_attempts})")
        raise last_error
