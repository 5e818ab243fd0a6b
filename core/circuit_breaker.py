"""
Loss circuit breaker.

Armed -> Tripped on either trigger:
    consecutive_losses >= max_losses_in_row   (reason: consecutive_losses)
    daily_pnl(today) < -max_daily_loss        (reason: max_daily_loss)

Tripped -> Armed once the pause elapses; the consecutive-loss counter is
reset on the way back. State is process-local: only one monitor instance
should own gating for a risk budget.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from infra.events import CircuitReset, CircuitTripped

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerState:
    active: bool = False
    active_until: float = 0.0
    consecutive_losses: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class CircuitStatus:
    active: bool
    reason: Optional[str] = None
    remaining_seconds: Optional[float] = None


class CircuitBreaker:
    def __init__(
        self,
        positions,
        max_losses_in_row: int = 3,
        max_daily_loss: float = 2.0,
        pause_seconds: float = 1800.0,
        clock: Callable[[], float] = time.time,
        events=None,
        metrics=None,
    ):
        if max_losses_in_row < 1:
            raise ValueError("max_losses_in_row must be >= 1")
        self._positions = positions
        self.max_losses_in_row = max_losses_in_row
        self.max_daily_loss = abs(max_daily_loss)
        self.pause_seconds = pause_seconds
        self._clock = clock
        self._events = events
        self._metrics = metrics
        self._state = CircuitBreakerState()
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(**vars(self._state))

    @property
    def is_active(self) -> bool:
        """Tripped state as last evaluated; unlike check() it never resets or re-triggers."""
        with self._lock:
            return self._state.active

    @property
    def consecutive_losses(self) -> int:
        return self._state.consecutive_losses

    def check(self) -> CircuitStatus:
        with self._lock:
            now = self._clock()
            if self._state.active and now >= self._state.active_until:
                self._reset()

            if not self._state.active:
                self._evaluate_triggers(now)

            if self._state.active:
                return CircuitStatus(
                    active=True,
                    reason=self._state.reason,
                    remaining_seconds=max(0.0, self._state.active_until - now),
                )
            return CircuitStatus(active=False)

    def record_outcome(self, pnl_quote: float) -> None:
        with self._lock:
            if pnl_quote < 0:
                self._state.consecutive_losses += 1
                logger.info(
                    "Loss recorded (%.6f): %d in a row",
                    pnl_quote, self._state.consecutive_losses,
                )
            else:
                self._state.consecutive_losses = 0

            if not self._state.active:
                self._evaluate_triggers(self._clock())

    def _evaluate_triggers(self, now: float) -> None:
        if self._state.consecutive_losses >= self.max_losses_in_row:
            self._trip("consecutive_losses", now, daily_pnl=None)
            return

        try:
            daily_pnl = self._positions.daily_pnl()
        except Exception as e:
            logger.warning("Daily PnL unavailable for circuit breaker: %s", e)
            return

        if daily_pnl < -self.max_daily_loss:
            self._trip("max_daily_loss", now, daily_pnl=daily_pnl)

    def _trip(self, reason: str, now: float, daily_pnl: Optional[float]) -> None:
        self._state.active = True
        self._state.active_until = now + self.pause_seconds
        self._state.reason = reason
        logger.warning(
            "Circuit breaker TRIPPED (%s): pausing entries and exits for %.0fs",
            reason, self.pause_seconds,
        )
        if self._metrics is not None:
            self._metrics.record_circuit_breaker_state("loss", True)
            self._metrics.record_circuit_breaker_trip(reason)
        if self._events is not None:
            self._events.publish(
                CircuitTripped(
                    reason=reason,
                    active_until=self._state.active_until,
                    consecutive_losses=self._state.consecutive_losses,
                    daily_pnl=daily_pnl,
                )
            )

    def _reset(self) -> None:
        previous = self._state.reason
        self._state = CircuitBreakerState()
        logger.info("Circuit breaker reset after cooldown (was %s)", previous)
        if self._metrics is not None:
            self._metrics.record_circuit_breaker_state("loss", False)
        if self._events is not None:
            self._events.publish(CircuitReset(previous_reason=previous))
