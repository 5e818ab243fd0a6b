"""Prometheus-backed metrics hooks for the exit monitor, oracle and entry gate."""

from __future__ import annotations

import logging
from collections import Counter as TallyCounter
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "riskcore_"


@dataclass
class TickStats:
    evaluated: int
    exits: int
    failures: int
    skipped: int
    circuit_active: bool
    duration_seconds: float


class MetricsRecorder:
    """
    Expose monitor stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors. Local
    tallies are kept even when the exporter is disabled so tools and tests
    can read them back.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: Optional[int] = None):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: Optional[int] = None) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_tick: Optional[TickStats] = None
        self._exits: TallyCounter = TallyCounter()
        self._rejections: TallyCounter = TallyCounter()
        self._oracle_lookups: TallyCounter = TallyCounter()
        self._oracle_errors: TallyCounter = TallyCounter()
        self._rate_limiter_wait_seconds = 0.0
        self._open_positions = 0
        self._circuit_open = False

        if not self._enabled:
            self._tick_summary = None
            self._tick_gauge = None
            self._exits_counter = None
            self._exit_failures_counter = None
            self._rejections_counter = None
            self._oracle_lookup_counter = None
            self._oracle_error_counter = None
            self._positions_gauge = None
            self._circuit_breaker_gauge = None
            self._circuit_breaker_trips_counter = None
            self._rate_limit_wait_summary = None
            return

        self._tick_summary = Summary(
            "riskcore_tick_duration_seconds",
            "Duration of one exit monitor tick",
        )
        self._tick_gauge = Gauge(
            "riskcore_tick_positions",
            "Per-tick position counts",
            labelnames=("stage",),  # evaluated, exits, failures, skipped
        )
        self._exits_counter = Counter(
            "riskcore_exits_total",
            "Positions closed by exit rule",
            labelnames=("rule",),
        )
        self._exit_failures_counter = Counter(
            "riskcore_exit_failures_total",
            "Sell attempts that failed, by exit rule",
            labelnames=("rule",),
        )
        self._rejections_counter = Counter(
            "riskcore_entry_rejections_total",
            "Entry requests rejected, by reason code",
            labelnames=("reason",),
        )
        self._oracle_lookup_counter = Counter(
            "riskcore_oracle_lookups_total",
            "Price lookups by cache tier (local, shared, miss)",
            labelnames=("tier",),
        )
        self._oracle_error_counter = Counter(
            "riskcore_oracle_errors_total",
            "Price reads that produced no snapshot",
            labelnames=("kind",),
        )
        self._positions_gauge = Gauge(
            "riskcore_open_positions",
            "Number of currently open positions",
        )
        self._circuit_breaker_gauge = Gauge(
            "riskcore_circuit_breaker_state",
            "Circuit breaker state (0=armed, 1=tripped)",
            labelnames=("breaker",),
        )
        self._circuit_breaker_trips_counter = Counter(
            "riskcore_circuit_breaker_trips_total",
            "Total number of circuit breaker trips",
            labelnames=("reason",),
        )
        self._rate_limit_wait_summary = Summary(
            "riskcore_rate_limiter_wait_seconds",
            "Time oracle reads spent waiting on the rate limiter",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started or not self._port:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_tick(self, report) -> None:
        stats = TickStats(
            evaluated=report.evaluated,
            exits=report.exits,
            failures=report.failures,
            skipped=report.skipped,
            circuit_active=report.circuit_active,
            duration_seconds=report.duration_seconds,
        )
        self._last_tick = stats
        if self._enabled and self._tick_summary and self._tick_gauge:
            self._tick_summary.observe(stats.duration_seconds)
            self._tick_gauge.labels(stage="evaluated").set(stats.evaluated)
            self._tick_gauge.labels(stage="exits").set(stats.exits)
            self._tick_gauge.labels(stage="failures").set(stats.failures)
            self._tick_gauge.labels(stage="skipped").set(stats.skipped)

    def record_exit(self, rule: str) -> None:
        self._exits[rule] += 1
        if self._enabled and self._exits_counter:
            self._exits_counter.labels(rule=rule).inc()

    def record_exit_failure(self, rule: str) -> None:
        if self._enabled and self._exit_failures_counter:
            self._exit_failures_counter.labels(rule=rule).inc()

    def record_entry_rejection(self, reason: str) -> None:
        # reason codes are a closed set, so label cardinality stays bounded
        self._rejections[reason] += 1
        if self._enabled and self._rejections_counter:
            self._rejections_counter.labels(reason=reason).inc()

    def record_oracle_lookup(self, tier: str) -> None:
        self._oracle_lookups[tier] += 1
        if self._enabled and self._oracle_lookup_counter:
            self._oracle_lookup_counter.labels(tier=tier).inc()

    def record_oracle_error(self, kind: str) -> None:
        self._oracle_errors[kind] += 1
        if self._enabled and self._oracle_error_counter:
            self._oracle_error_counter.labels(kind=kind).inc()

    def record_open_positions(self, count: int) -> None:
        self._open_positions = max(0, int(count))
        if self._enabled and self._positions_gauge:
            self._positions_gauge.set(self._open_positions)

    def record_circuit_breaker_state(self, breaker_name: str, is_open: bool) -> None:
        self._circuit_open = bool(is_open)
        if self._enabled and self._circuit_breaker_gauge:
            self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1 if is_open else 0)

    def record_circuit_breaker_trip(self, reason: str) -> None:
        if self._enabled and self._circuit_breaker_trips_counter:
            self._circuit_breaker_trips_counter.labels(reason=reason).inc()

    def record_rate_limiter_wait(self, seconds: float) -> None:
        self._rate_limiter_wait_seconds += seconds
        if self._enabled and self._rate_limit_wait_summary:
            self._rate_limit_wait_summary.observe(seconds)

    def last_tick(self) -> Optional[TickStats]:
        return self._last_tick

    def exits_snapshot(self) -> Dict[str, int]:
        return dict(self._exits)

    def rejections_snapshot(self) -> Dict[str, int]:
        return dict(self._rejections)

    def oracle_snapshot(self) -> Dict[str, Dict[str, int]]:
        return {"lookups": dict(self._oracle_lookups), "errors": dict(self._oracle_errors)}

    def open_positions(self) -> int:
        return self._open_positions
