"""
Entry coordinator.

Consumes new-asset events from the signal source and walks them through
the gates in order:

    circuit breaker -> per-asset cooldown -> already open -> fresh price ->
    risk gate -> buy -> open position

When auto-trading is off an approved entry is published as a signal only.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Set

from core.exceptions import DuplicateOpenPosition
from core.models import EntryDecision, Position, SignalContext
from infra.events import EntryRejected, EntrySignalled, PositionOpened

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryOutcome:
    decision: EntryDecision
    position: Optional[Position] = None
    executed: bool = False

    @property
    def reason(self) -> Optional[str]:
        return self.decision.reason


class EntryCoordinator:
    def __init__(
        self,
        positions,
        oracle,
        risk_gate,
        circuit_breaker,
        executor,
        auto_trading: bool = False,
        asset_cooldown_seconds: float = 900.0,
        min_initial_volume: float = 0.0,
        events=None,
        metrics=None,
        clock: Callable[[], float] = time.time,
    ):
        self.positions = positions
        self.oracle = oracle
        self.risk_gate = risk_gate
        self.circuit_breaker = circuit_breaker
        self.executor = executor
        self.auto_trading = auto_trading
        self.asset_cooldown_seconds = asset_cooldown_seconds
        self.min_initial_volume = min_initial_volume
        self._events = events
        self._metrics = metrics
        self._clock = clock

        self._last_entry: Dict[str, float] = {}
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    def handle_signal(self, signal: SignalContext) -> EntryOutcome:
        asset = signal.asset
        if not asset:
            return self._reject("", "invalid_signal")

        with self._lock:
            if asset in self._in_flight:
                return self._reject(asset, "entry_in_progress")
            self._in_flight.add(asset)
        try:
            return self._evaluate(signal)
        finally:
            with self._lock:
                self._in_flight.discard(asset)

    def handle_finalization(self, asset: str) -> None:
        """Graduation notification from the signal source."""
        if not asset:
            return
        self.oracle.mark_finalized(asset)
        logger.info("Asset %s finalized", asset)

    def _evaluate(self, signal: SignalContext) -> EntryOutcome:
        asset = signal.asset
        now = self._clock()

        status = self.circuit_breaker.check()
        if status.active:
            return self._reject(asset, "circuit_breaker_cooldown")

        last = self._last_entry.get(asset)
        if last is not None and now - last < self.asset_cooldown_seconds:
            return self._reject(asset, "asset_cooldown")

        if self.min_initial_volume > 0 and (signal.volume_hint or 0.0) < self.min_initial_volume:
            return self._reject(asset, "low_volume")

        existing = self.positions.get(asset)
        if existing is not None and existing.is_open:
            return self._reject(asset, "already_open")

        snapshot = self.oracle.get_price(asset, force_fresh=True)
        if snapshot is None or snapshot.price <= 0:
            return self._reject(asset, "price_unavailable")
        if snapshot.is_finalized or self.oracle.is_finalized(asset):
            return self._reject(asset, "already_finalized")

        context = replace(signal, quote_reserves=snapshot.quote_reserves)
        decision = self.risk_gate.should_enter(asset, snapshot.price, context)
        if not decision.allowed:
            self._publish(EntryRejected(asset, decision.reason or "rejected"))
            return EntryOutcome(decision=decision)

        if not self.auto_trading:
            logger.info("Auto-trading off: entry for %s recorded as signal only", asset)
            self._last_entry[asset] = now
            self._publish(
                EntrySignalled(
                    asset=asset,
                    symbol=signal.symbol,
                    price=snapshot.price,
                    size=decision.size,
                    stop_loss=decision.stop_loss,
                    take_profit=decision.take_profit,
                )
            )
            return EntryOutcome(decision=decision)

        try:
            result = self.executor.buy(asset, decision.size)
        except Exception as e:
            logger.warning("Buy raised for %s", asset, exc_info=True)
            return self._reject(asset, "execution_failed", detail=str(e))

        if not result.success:
            return self._reject(asset, "execution_failed", detail=result.error)
        if result.tokens_received <= 0:
            return self._reject(asset, "execution_failed", detail="no tokens received")

        quote_spent = result.quote_spent or decision.size
        entry_price = result.entry_price or snapshot.price or quote_spent / result.tokens_received

        try:
            position = self.positions.open(
                asset,
                signal.symbol,
                entry_price=entry_price,
                quote_in=quote_spent,
                token_amount=result.tokens_received,
                execution_ref=result.execution_ref,
                strategy_tag=decision.slot_type.value,
            )
        except DuplicateOpenPosition:
            logger.error("Bought %s but an open position already exists; not recording a second one", asset)
            return self._reject(asset, "already_open")

        self._last_entry[asset] = now
        self._publish(
            PositionOpened(
                asset=asset,
                symbol=position.symbol,
                entry_price=position.entry_price,
                quote_in=position.quote_amount_in,
                token_amount=position.token_amount,
                strategy_tag=position.strategy_tag,
                simulated=result.simulated,
            )
        )
        return EntryOutcome(decision=decision, position=position, executed=True)

    def _reject(self, asset: str, reason: str, detail: Optional[str] = None) -> EntryOutcome:
        if detail:
            logger.warning("Entry rejected for %s: %s (%s)", asset, reason, detail)
        else:
            logger.info("Entry rejected for %s: %s", asset, reason)
        if self._metrics is not None:
            self._metrics.record_entry_rejection(reason)
        self._publish(EntryRejected(asset, reason))
        return EntryOutcome(decision=EntryDecision.reject(reason))

    def _publish(self, event) -> None:
        if self._events is not None:
            self._events.publish(event)
