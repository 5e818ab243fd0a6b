"""
Domain events and an in-process observer.

Core components publish immutable facts here instead of talking to
notification sinks directly. Listeners (alerting, metrics, tests) subscribe
to the dispatcher; a failing listener never breaks the publisher.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionOpened:
    asset: str
    symbol: str
    entry_price: float
    quote_in: float
    token_amount: float
    strategy_tag: str
    simulated: bool = False

    def describe(self) -> str:
        mode = " [paper]" if self.simulated else ""
        return (
            f"Opened {self.symbol} ({self.asset}){mode}: {self.quote_in:.4f} in at "
            f"{self.entry_price:.10f}, {self.token_amount:.2f} tokens, slot={self.strategy_tag}"
        )


@dataclass(frozen=True)
class EntrySignalled:
    """Approved entry that was not executed because auto-trading is off."""
    asset: str
    symbol: str
    price: float
    size: float
    stop_loss: float
    take_profit: float

    def describe(self) -> str:
        return (
            f"Entry signal {self.symbol} ({self.asset}): price {self.price:.10f}, size {self.size:.4f}, "
            f"SL {self.stop_loss:.10f}, TP {self.take_profit:.10f}"
        )


@dataclass(frozen=True)
class EntryRejected:
    asset: str
    reason: str

    def describe(self) -> str:
        return f"Entry rejected for {self.asset}: {self.reason}"


@dataclass(frozen=True)
class ExitTriggered:
    asset: str
    rule: str
    reason: str
    current_price: float
    pnl_percent: float

    def describe(self) -> str:
        return f"Exit triggered for {self.asset}: {self.reason} (PnL {self.pnl_percent:+.2f}%)"


@dataclass(frozen=True)
class ExitFailed:
    asset: str
    rule: str
    error: str

    def describe(self) -> str:
        return f"Exit failed for {self.asset} ({self.rule}): {self.error}; will retry next tick"


@dataclass(frozen=True)
class PositionClosed:
    asset: str
    symbol: str
    reason: str
    exit_price: float
    pnl_quote: float
    pnl_percent: float
    hold_seconds: float
    simulated: bool = False

    def describe(self) -> str:
        mode = " [paper]" if self.simulated else ""
        return (
            f"Closed {self.symbol} ({self.asset}){mode}: {self.reason}, "
            f"PnL {self.pnl_quote:+.6f} ({self.pnl_percent:+.2f}%), held {self.hold_seconds:.0f}s"
        )


@dataclass(frozen=True)
class CircuitTripped:
    reason: str
    active_until: float
    consecutive_losses: int
    daily_pnl: Optional[float] = None

    def describe(self) -> str:
        return (
            f"Circuit breaker tripped: {self.reason} "
            f"({self.consecutive_losses} losses in a row, daily PnL {self.daily_pnl})"
        )


@dataclass(frozen=True)
class CircuitReset:
    previous_reason: Optional[str] = None

    def describe(self) -> str:
        return f"Circuit breaker reset after cooldown ({self.previous_reason})"


Listener = Callable[[object], None]


class EventDispatcher:
    """Synchronous fan-out to subscribed listeners."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: object) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning(
                    "Event listener %r failed on %s", listener, type(event).__name__, exc_info=True
                )


class RecordingListener:
    """Keeps every published event; handy for inspection and tests."""

    def __init__(self):
        self.events: List[object] = []

    def __call__(self, event: object) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> List[object]:
        return [e for e in self.events if isinstance(e, event_type)]
