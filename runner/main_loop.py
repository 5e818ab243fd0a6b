"""
Risk Monitor Runner: Main Loop

Wires the risk core together and drives the exit monitor.

Flow:
1. Validate app.yaml / policy.yaml
2. Configure logging, acquire the single-instance lock
3. Build the object graph (one PriceOracleCache shared by everything)
4. Tick the exit monitor until SIGINT/SIGTERM

Entry signals arrive from an external feed; the feed calls
``MonitorLoop.submit_signal`` / ``MonitorLoop.submit_finalization``.
"""

import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from core.circuit_breaker import CircuitBreaker
from core.entry import EntryCoordinator, EntryOutcome
from core.exceptions import ConfigurationError
from core.execution import PaperExecutor
from core.exit_monitor import ExitMonitor, ExitRules
from core.ledger_client import PUMP_PROGRAM_ID, RpcLedgerReader
from core.models import SignalContext, TickReport
from core.position_store import PositionStore
from core.price_oracle import PriceOracleCache
from core.retry import RetryPolicy
from core.risk import RiskGate, RiskPolicy
from infra.alerting import AlertingListener, AlertService
from infra.events import EventDispatcher
from infra.instance_lock import SingleInstanceLock
from infra.kv_store import create_kv_store_from_config
from infra.metrics import MetricsRecorder
from infra.rate_limiter import RateLimiter
from tools.config_validator import load_configs

logger = logging.getLogger(__name__)


class MonitorLoop:
    """
    Main loop orchestrator.

    Responsibilities:
    - Load and validate config
    - Own the component graph
    - Run exit monitor ticks until stopped
    - Release the lock and close the store on shutdown

    ``store``, ``reader`` and ``executor`` may be injected (tests, LIVE
    deployments); otherwise they are built from config. LIVE mode has no
    built-in executor and requires one to be injected.
    """

    def __init__(
        self,
        config_dir: str = "config",
        store=None,
        reader=None,
        executor=None,
        install_signal_handlers: bool = True,
    ):
        self.config_dir = Path(config_dir)
        self.app_config, self.policy_config = load_configs(str(self.config_dir))

        self.mode = self.app_config["mode"]
        self.auto_trading = bool(self.app_config.get("auto_trading", False))
        self._configure_logging(self.app_config.get("logging") or {})
        logger.info("Starting risk monitor in mode=%s, auto_trading=%s", self.mode, self.auto_trading)

        loop_cfg = self.app_config.get("loop") or {}
        self.tick_seconds = float(loop_cfg.get("tick_seconds", 5.0))
        self.instance_lock = SingleInstanceLock(
            loop_cfg.get("instance_name", "risk-monitor"),
            lock_dir=loop_cfg.get("lock_dir", "data"),
        )
        if not self.instance_lock.acquire():
            logger.error("Another monitor instance is already running on this budget. Exiting.")
            raise RuntimeError("Single-instance lock held by another process")

        try:
            self._build(store=store, reader=reader, executor=executor)
        except Exception:
            self.instance_lock.release()
            raise

        self._stop_event = threading.Event()
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info("Initialized MonitorLoop (tick=%.1fs)", self.tick_seconds)

    @staticmethod
    def _configure_logging(log_cfg: Dict[str, Any]) -> None:
        handlers = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))

        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _build(self, store=None, reader=None, executor=None) -> None:
        app, policy = self.app_config, self.policy_config

        monitoring = app.get("monitoring") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring.get("metrics_enabled", False)),
            port=monitoring.get("metrics_port"),
        )
        self.metrics.start()

        alerts_cfg = app.get("alerts") or {}
        self.alerts = AlertService.from_config(alerts_cfg)
        self.events = EventDispatcher()
        self.events.subscribe(
            AlertingListener(self.alerts, notify_on_entry=bool(alerts_cfg.get("notify_on_entry", True)))
        )

        self.store = store or create_kv_store_from_config(app.get("store"))

        ledger_cfg = app.get("ledger") or {}
        if reader is None:
            program_id = ledger_cfg.get("program_id") or PUMP_PROGRAM_ID
            reader = RpcLedgerReader(
                ledger_cfg["rpc_url"],
                timeout=float(ledger_cfg.get("timeout_seconds", 10.0)),
                commitment=ledger_cfg.get("commitment", "confirmed"),
                program_id=program_id,
            )
            fallback_url = ledger_cfg.get("fallback_rpc_url")
            fallback_reader = (
                RpcLedgerReader(
                    fallback_url,
                    timeout=float(ledger_cfg.get("timeout_seconds", 10.0)),
                    commitment=ledger_cfg.get("commitment", "confirmed"),
                    program_id=program_id,
                )
                if fallback_url
                else None
            )
        else:
            fallback_reader = None

        oracle_cfg = policy.get("oracle") or {}
        self.oracle = PriceOracleCache(
            reader,
            fallback_reader=fallback_reader,
            store=self.store,
            local_ttl_seconds=float(oracle_cfg.get("local_ttl_seconds", 3.0)),
            shared_ttl_seconds=float(oracle_cfg.get("shared_ttl_seconds", 10.0)),
            finalized_ttl_seconds=float(oracle_cfg.get("finalized_ttl_seconds", 3 * 24 * 3600)),
            retry_policy=RetryPolicy(
                max_attempts=int(oracle_cfg.get("max_retries", 3)),
                base_delay=float(oracle_cfg.get("retry_delay_seconds", 0.5)),
                name="ledger_read",
            ),
            min_sane_price=float(oracle_cfg.get("min_sane_price", 1e-9)),
            max_sane_price=float(oracle_cfg.get("max_sane_price", 1.0)),
            min_liquidity=float(oracle_cfg.get("min_liquidity", 0.1)),
            metrics=self.metrics,
        )

        risk_cfg = policy.get("risk") or {}
        self.positions = PositionStore(self.store, record_ttl_seconds=risk_cfg.get("record_ttl_seconds"))
        self.oracle.attach_positions(self.positions)

        self.risk_gate = RiskGate(RiskPolicy.from_config(policy), self.positions, metrics=self.metrics)

        cb_cfg = policy.get("circuit_breaker") or {}
        self.circuit_breaker = CircuitBreaker(
            self.positions,
            max_losses_in_row=int(cb_cfg.get("max_losses_in_row", 3)),
            max_daily_loss=float(cb_cfg.get("max_daily_loss", 2.0)),
            pause_seconds=float(cb_cfg.get("pause_seconds", 1800.0)),
            events=self.events,
            metrics=self.metrics,
        )

        self.rate_limiter = RateLimiter.from_config(policy.get("rate_limiter"), metrics=self.metrics)

        if executor is None:
            if self.mode != "DRY_RUN":
                raise ConfigurationError("LIVE mode requires an injected trade executor")
            executor = PaperExecutor.from_config(self.oracle, policy.get("execution"))
        self.executor = executor

        self.exit_monitor = ExitMonitor(
            self.positions,
            self.oracle,
            self.rate_limiter,
            self.circuit_breaker,
            self.executor,
            ExitRules.from_config(policy),
            store=self.store,
            events=self.events,
            metrics=self.metrics,
        )
        self.entries = EntryCoordinator(
            self.positions,
            self.oracle,
            self.risk_gate,
            self.circuit_breaker,
            self.executor,
            auto_trading=self.auto_trading,
            asset_cooldown_seconds=float(risk_cfg.get("asset_cooldown_seconds", 900.0)),
            min_initial_volume=float(risk_cfg.get("min_initial_volume", 0.0)),
            events=self.events,
            metrics=self.metrics,
        )

    def _handle_stop(self, *_):
        """Stop after the current tick; open positions are left as they are."""
        logger.warning("Stop signal received. Finishing current tick.")
        self._stop_event.set()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def submit_signal(self, signal_context: SignalContext) -> EntryOutcome:
        return self.entries.handle_signal(signal_context)

    def submit_finalization(self, asset: str) -> None:
        self.entries.handle_finalization(asset)

    def run_once(self) -> TickReport:
        return self.exit_monitor.run_tick()

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = float(interval_seconds) if interval_seconds else self.tick_seconds
        try:
            self.exit_monitor.run_forever(self._stop_event, interval_seconds=max(interval, 0.1))
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        started = time.monotonic()
        try:
            self.store.close()
        except Exception as e:
            logger.warning("Error closing store: %s", e)
        self.instance_lock.release()
        logger.info("Shutdown complete in %.2fs", time.monotonic() - started)


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Risk and position monitor")
    parser.add_argument("--once", action="store_true", help="Run one tick and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (default: loop.tick_seconds)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    try:
        loop = MonitorLoop(config_dir=args.config_dir)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR, format="%(levelname)s: %(message)s")
        logger.error("%s", e)
        sys.exit(2)
    except RuntimeError:
        sys.exit(1)

    if args.once:
        try:
            report = loop.run_once()
            logger.info(
                "Tick: evaluated=%d exits=%d failures=%d skipped=%d",
                report.evaluated, report.exits, report.failures, report.skipped,
            )
        finally:
            loop.shutdown()
    else:
        loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
