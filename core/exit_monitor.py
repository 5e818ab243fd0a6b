"""
Exit monitor: the periodic risk loop.

Per open position, every tick:
    price (rate limited, entry-price fallback) -> peak bookkeeping ->
    exit rules in priority order -> sell -> close -> circuit breaker

Rule priority (first match wins): stop_loss > take_profit > trailing_stop >
stagnation > finalized. While the circuit breaker is tripped only the peak
bookkeeping runs. A failure on one position never blocks the others.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.exceptions import PositionNotFound
from core.models import ExitSignal, Position, PriceSource, TickReport
from infra.events import ExitFailed, ExitTriggered, PositionClosed

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "monitor:last_tick"


@dataclass(frozen=True)
class ExitRules:
    stop_loss_pct: float = 13.0
    take_profit_pct: float = 30.0
    trailing_stop_pct: float = 15.0
    stagnation_seconds: float = 300.0
    stagnation_pnl_threshold: float = 5.0
    exit_on_finalized: bool = False

    @classmethod
    def from_config(cls, policy: Dict[str, Any]) -> "ExitRules":
        exits = policy.get("exits", {}) or {}
        return cls(
            stop_loss_pct=abs(float(exits.get("stop_loss_pct", 13.0))),
            take_profit_pct=float(exits.get("take_profit_pct", 30.0)),
            trailing_stop_pct=abs(float(exits.get("trailing_stop_pct", 15.0))),
            stagnation_seconds=float(exits.get("stagnation_seconds", 300.0)),
            stagnation_pnl_threshold=float(exits.get("stagnation_pnl_threshold", 5.0)),
            exit_on_finalized=bool(exits.get("exit_on_finalized", False)),
        )


def evaluate_exit(
    position: Position,
    price: float,
    now: float,
    rules: ExitRules,
    is_finalized: bool = False,
) -> Optional[ExitSignal]:
    """
    Check whether ``position`` should be exited at ``price``.

    Returns:
        ExitSignal for the first rule that fires, None otherwise
    """
    entry = position.entry_price
    if entry <= 0 or price <= 0:
        return None

    peak = max(position.max_price_seen, price)
    pnl_pct = (price - entry) / entry * 100
    drawdown_pct = (price - peak) / peak * 100
    hold_seconds = position.hold_seconds(now)

    def _signal(rule: str, reason: str) -> ExitSignal:
        return ExitSignal(
            asset=position.asset,
            rule=rule,
            reason=reason,
            current_price=price,
            entry_price=entry,
            max_price_seen=peak,
            pnl_percent=pnl_pct,
            drawdown_percent=drawdown_pct,
            hold_seconds=hold_seconds,
        )

    if pnl_pct <= -rules.stop_loss_pct:
        return _signal("stop_loss", f"STOP LOSS ({pnl_pct:.2f}% <= -{rules.stop_loss_pct}%)")

    if pnl_pct >= rules.take_profit_pct:
        return _signal("take_profit", f"TAKE PROFIT ({pnl_pct:.2f}% >= {rules.take_profit_pct}%)")

    if drawdown_pct <= -rules.trailing_stop_pct:
        return _signal(
            "trailing_stop",
            f"TRAILING STOP (peak {peak:.10f} -> {price:.10f}, {drawdown_pct:.2f}%)",
        )

    if hold_seconds > rules.stagnation_seconds and pnl_pct < rules.stagnation_pnl_threshold:
        return _signal(
            "stagnation",
            f"STAGNATION (held {hold_seconds:.0f}s > {rules.stagnation_seconds:.0f}s, "
            f"PnL {pnl_pct:.2f}% < {rules.stagnation_pnl_threshold}%)",
        )

    if rules.exit_on_finalized and is_finalized:
        return _signal("finalized", "FINALIZED (asset migrated off the curve)")

    return None


class ExitMonitor:
    def __init__(
        self,
        positions,
        oracle,
        rate_limiter,
        circuit_breaker,
        executor,
        rules: ExitRules,
        store=None,
        events=None,
        metrics=None,
        clock: Callable[[], float] = time.time,
    ):
        self.positions = positions
        self.oracle = oracle
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.executor = executor
        self.rules = rules
        self._store = store
        self._events = events
        self._metrics = metrics
        self._clock = clock
        self._tick_lock = threading.Lock()

    def run_tick(self) -> TickReport:
        with self._tick_lock:
            started = self._clock()
            perf_start = time.perf_counter()
            report = TickReport(started_at=started)

            status = self.circuit_breaker.check()
            report.circuit_active = status.active
            if status.active:
                logger.info(
                    "Circuit breaker active (%s, %.0fs left): bookkeeping only",
                    status.reason, status.remaining_seconds or 0.0,
                )

            try:
                open_positions = self.positions.list_open()
            except Exception:
                logger.warning("Could not list open positions this tick", exc_info=True)
                open_positions = []

            circuit_active = status.active
            for position in open_positions:
                # a trip from an exit earlier in this tick stops the remaining sells
                if not circuit_active and self.circuit_breaker.is_active:
                    circuit_active = True
                    report.circuit_active = True
                    logger.warning("Circuit breaker tripped mid-tick: remaining positions get bookkeeping only")
                try:
                    self._process_position(position, report, circuit_active)
                except Exception:
                    report.failures += 1
                    logger.warning("Exit evaluation failed for %s", position.asset, exc_info=True)

            self.oracle.clean_expired()
            report.duration_seconds = time.perf_counter() - perf_start
            self._write_heartbeat(started)

            if self._metrics is not None:
                self._metrics.observe_tick(report)
                self._metrics.record_open_positions(len(open_positions) - report.exits)

            if open_positions:
                logger.debug(
                    "Tick done: evaluated=%d exits=%d failures=%d skipped=%d (%.3fs)",
                    report.evaluated, report.exits, report.failures, report.skipped,
                    report.duration_seconds,
                )
            return report

    def run_forever(self, stop_event: threading.Event, interval_seconds: float = 5.0) -> None:
        """Tick until ``stop_event`` is set; the current tick always finishes."""
        logger.info("Exit monitor started (tick=%.1fs)", interval_seconds)
        while not stop_event.is_set():
            try:
                self.run_tick()
            except Exception:
                logger.exception("Exit monitor tick crashed")
            stop_event.wait(interval_seconds)
        logger.info("Exit monitor stopped")

    def _process_position(self, position: Position, report: TickReport, circuit_active: bool) -> None:
        asset = position.asset
        snapshot = self.rate_limiter.schedule(self.oracle.get_price_with_fallback, asset)
        if snapshot is None or snapshot.price <= 0:
            report.skipped += 1
            logger.debug("No price for %s this tick", asset)
            return

        price = snapshot.price
        if self.positions.update_max_price(asset, price):
            position.max_price_seen = price

        if circuit_active:
            report.skipped += 1
            return

        report.evaluated += 1
        now = self._clock()
        signal = evaluate_exit(position, price, now, self.rules, is_finalized=snapshot.is_finalized)
        if signal is None:
            return

        if snapshot.source == PriceSource.ENTRY_FALLBACK:
            logger.warning("Exit for %s evaluated on entry-price fallback", asset)

        logger.info(
            "EXIT SIGNAL: %s %s - PnL: %+.2f%%, Hold: %.0fs, Price: %.10f -> %.10f",
            asset, signal.rule.upper(), signal.pnl_percent, signal.hold_seconds,
            signal.entry_price, signal.current_price,
        )
        self._publish(ExitTriggered(asset, signal.rule, signal.reason, price, signal.pnl_percent))

        try:
            result = self.executor.sell(asset, position.token_amount)
        except Exception as e:
            logger.warning("Sell raised for %s", asset, exc_info=True)
            self._fail(asset, signal.rule, str(e), report)
            return

        if not result.success:
            self._fail(asset, signal.rule, result.error or "sell_failed", report)
            return

        try:
            closed = self.positions.close(
                asset,
                exit_price=result.exit_price or price,
                token_amount=position.token_amount,
                quote_out=result.quote_received,
                reason=signal.rule,
                execution_ref=result.execution_ref,
            )
        except PositionNotFound:
            logger.info("Position %s already closed elsewhere", asset)
            return

        self.circuit_breaker.record_outcome(closed.pnl_quote or 0.0)
        report.exits += 1
        report.closed_assets.append(asset)

        if self._metrics is not None:
            self._metrics.record_exit(signal.rule)
        self._publish(
            PositionClosed(
                asset=asset,
                symbol=closed.symbol,
                reason=signal.reason,
                exit_price=closed.exit_price or price,
                pnl_quote=closed.pnl_quote or 0.0,
                pnl_percent=closed.pnl_percent or 0.0,
                hold_seconds=signal.hold_seconds,
                simulated=result.simulated,
            )
        )

    def _fail(self, asset: str, rule: str, error: str, report: TickReport) -> None:
        report.failures += 1
        logger.error("Auto-sell failed for %s (%s): %s", asset, rule, error)
        if self._metrics is not None:
            self._metrics.record_exit_failure(rule)
        self._publish(ExitFailed(asset, rule, error))

    def _publish(self, event) -> None:
        if self._events is not None:
            self._events.publish(event)

    def _write_heartbeat(self, ts: float) -> None:
        if self._store is None:
            return
        try:
            self._store.set(HEARTBEAT_KEY, str(ts))
        except Exception as e:
            logger.warning("Heartbeat write failed: %s", e)
