"""
Tests for the exit monitor

evaluate_exit rule priority, full ticks against a real PositionStore and
CircuitBreaker, failure isolation and graceful stop.
"""
from unittest.mock import Mock

import pytest

from core.circuit_breaker import CircuitBreaker
from core.entry import EntryCoordinator
from core.exit_monitor import HEARTBEAT_KEY, ExitMonitor, ExitRules, evaluate_exit
from core.models import Position, PriceSnapshot, PriceSource, RiskBudget, SignalContext
from core.risk import RiskGate, RiskPolicy
from infra.events import ExitFailed, ExitTriggered, PositionClosed
from infra.rate_limiter import RateLimiter

RULES = ExitRules(
    stop_loss_pct=13,
    take_profit_pct=30,
    trailing_stop_pct=15,
    stagnation_seconds=300,
    stagnation_pnl_threshold=5,
)


class StubOracle:
    """Serves exact prices so threshold arithmetic is not blurred by reserve division."""

    def __init__(self, clock):
        self._clock = clock
        self.prices = {}
        self.finalized = set()
        self.source = PriceSource.PRIMARY

    def get_price_with_fallback(self, asset):
        price = self.prices.get(asset)
        if price is None:
            return None
        return PriceSnapshot(
            asset=asset,
            price=price,
            base_reserves=1.0,
            quote_reserves=price,
            total_supply=1.0,
            is_finalized=asset in self.finalized,
            source=self.source,
            fetched_at=self._clock(),
        )

    def get_price(self, asset, force_fresh=False):
        return self.get_price_with_fallback(asset)

    def is_finalized(self, asset):
        return asset in self.finalized

    def clean_expired(self):
        return 0


@pytest.fixture
def stub_oracle(clock):
    return StubOracle(clock)


@pytest.fixture
def breaker(positions, clock, events):
    return CircuitBreaker(positions, max_losses_in_row=3, max_daily_loss=100.0, pause_seconds=1800, clock=clock, events=events)


@pytest.fixture
def limiter(clock):
    return RateLimiter(calls_per_second=10, clock=clock, sleep=clock.sleep)


@pytest.fixture
def monitor(positions, stub_oracle, limiter, breaker, executor, kv, events, metrics, clock):
    return ExitMonitor(
        positions,
        stub_oracle,
        limiter,
        breaker,
        executor,
        RULES,
        store=kv,
        events=events,
        metrics=metrics,
        clock=clock,
    )


def _open(positions, asset="MintAAA111", entry_price=1.0, quote_in=1.0, tokens=1.0):
    return positions.open(asset, asset[4:7], entry_price=entry_price, quote_in=quote_in, token_amount=tokens)


def _position(entry_price=1.0, max_price_seen=None, entry_time=0.0):
    return Position(
        asset="MintAAA111",
        symbol="AAA",
        entry_price=entry_price,
        entry_time=entry_time,
        quote_amount_in=1.0,
        token_amount=1.0,
        max_price_seen=max_price_seen if max_price_seen is not None else entry_price,
    )


class TestEvaluateExit:
    """Pure rule evaluation"""

    def test_no_rule_fires_in_band(self):
        assert evaluate_exit(_position(), 1.05, now=10, rules=RULES) is None

    def test_stop_loss_boundary(self):
        signal = evaluate_exit(_position(), 0.87, now=10, rules=RULES)

        assert signal.rule == "stop_loss"
        assert "STOP LOSS" in signal.reason

    def test_take_profit_boundary(self):
        assert evaluate_exit(_position(), 1.30, now=10, rules=RULES).rule == "take_profit"

    def test_trailing_uses_observed_price_as_peak_candidate(self):
        # stored peak is stale; current price is the new peak so drawdown is zero
        assert evaluate_exit(_position(max_price_seen=1.0), 1.2, now=10, rules=RULES) is None

    def test_stop_loss_wins_over_trailing(self):
        signal = evaluate_exit(_position(max_price_seen=1.25), 0.80, now=10, rules=RULES)

        assert signal.rule == "stop_loss"
        assert signal.drawdown_percent == pytest.approx(-36.0)

    def test_take_profit_wins_over_stagnation(self):
        assert evaluate_exit(_position(), 1.5, now=10_000, rules=RULES).rule == "take_profit"

    def test_stagnation_requires_both_conditions(self):
        assert evaluate_exit(_position(), 1.02, now=300, rules=RULES) is None
        assert evaluate_exit(_position(), 1.10, now=310, rules=RULES) is None
        assert evaluate_exit(_position(), 1.02, now=310, rules=RULES).rule == "stagnation"

    def test_finalized_rule_is_config_gated(self):
        assert evaluate_exit(_position(), 1.05, now=10, rules=RULES, is_finalized=True) is None

        gated = ExitRules(exit_on_finalized=True)
        assert evaluate_exit(_position(), 1.05, now=10, rules=gated, is_finalized=True).rule == "finalized"

    def test_non_positive_prices_never_fire(self):
        assert evaluate_exit(_position(entry_price=0.0), 1.0, now=10, rules=RULES) is None
        assert evaluate_exit(_position(), 0.0, now=10, rules=RULES) is None

    def test_rules_from_config(self):
        rules = ExitRules.from_config({"exits": {"stop_loss_pct": -20, "exit_on_finalized": True}})

        assert rules.stop_loss_pct == 20.0
        assert rules.take_profit_pct == 30.0
        assert rules.exit_on_finalized is True


class TestScenarios:
    """End-to-end exits through run_tick"""

    def test_scenario_a_take_profit(self, monitor, positions, stub_oracle, executor, recorder):
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 1.30
        executor.sell_prices["MintAAA111"] = 1.30

        report = monitor.run_tick()

        assert report.exits == 1
        assert report.closed_assets == ["MintAAA111"]
        closed = positions.get("MintAAA111")
        assert closed.close_reason == "take_profit"
        assert closed.pnl_quote == pytest.approx(0.30)
        assert [e.rule for e in recorder.of_type(ExitTriggered)] == ["take_profit"]
        assert len(recorder.of_type(PositionClosed)) == 1

    def test_scenario_b_stop_loss(self, monitor, positions, stub_oracle, executor):
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 0.87
        executor.sell_prices["MintAAA111"] = 0.87

        monitor.run_tick()

        assert positions.get("MintAAA111").close_reason == "stop_loss"

    def test_scenario_c_trailing_stop_in_profit(self, monitor, positions, stub_oracle, executor):
        _open(positions)
        positions.update_max_price("MintAAA111", 1.5)
        stub_oracle.prices["MintAAA111"] = 1.2
        executor.sell_prices["MintAAA111"] = 1.2

        monitor.run_tick()

        closed = positions.get("MintAAA111")
        assert closed.close_reason == "trailing_stop"
        assert closed.pnl_quote == pytest.approx(0.2)

    def test_scenario_d_stagnation(self, monitor, positions, stub_oracle, executor, clock):
        _open(positions)
        clock.advance(310)
        stub_oracle.prices["MintAAA111"] = 1.02
        executor.sell_prices["MintAAA111"] = 1.02

        monitor.run_tick()

        assert positions.get("MintAAA111").close_reason == "stagnation"

    def test_scenario_e_losses_trip_breaker_and_block_entries(
        self, monitor, positions, stub_oracle, executor, breaker, clock, metrics
    ):
        for asset in ("MintAAA111", "MintBBB222", "MintCCC333"):
            _open(positions, asset=asset)
            stub_oracle.prices[asset] = 0.5
            executor.sell_prices[asset] = 0.5

        report = monitor.run_tick()

        assert report.exits == 3
        assert breaker.check().active is True

        gate = RiskGate(
            RiskPolicy(budget=RiskBudget(max_total_slots=5), max_daily_loss=100.0),
            positions,
        )
        entries = EntryCoordinator(
            positions, stub_oracle, gate, breaker, executor, auto_trading=True, clock=clock, metrics=metrics
        )
        stub_oracle.prices["MintNEW"] = 1e-7

        outcome = entries.handle_signal(SignalContext(asset="MintNEW", symbol="NEW", quote_reserves=30.0))

        assert outcome.decision.allowed is False
        assert outcome.reason == "circuit_breaker_cooldown"
        assert executor.buys == []


    def test_trip_mid_tick_stops_remaining_sells(self, monitor, positions, stub_oracle, executor, breaker, recorder):
        assets = ("MintAAA111", "MintBBB222", "MintCCC333", "MintDDD444")
        for asset in assets:
            _open(positions, asset=asset)
            stub_oracle.prices[asset] = 0.5
            executor.sell_prices[asset] = 0.5

        report = monitor.run_tick()

        assert report.exits == 3
        assert report.skipped == 1
        assert report.circuit_active is True
        assert len(executor.sells) == 3
        assert len(positions.list_open()) == 1
        assert breaker.is_active is True
        assert len(recorder.of_type(ExitTriggered)) == 3


class TestTickBehaviour:
    def test_peak_tracked_without_exit(self, monitor, positions, stub_oracle):
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 1.2

        report = monitor.run_tick()

        assert report.evaluated == 1
        assert report.exits == 0
        assert positions.get("MintAAA111").max_price_seen == pytest.approx(1.2)

    def test_failed_sell_leaves_position_open_and_retries(self, monitor, positions, stub_oracle, executor, recorder):
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 0.5
        executor.fail_sells = True

        report = monitor.run_tick()

        assert report.failures == 1
        assert positions.get("MintAAA111").is_open
        failed = recorder.of_type(ExitFailed)
        assert failed[0].rule == "stop_loss"
        assert failed[0].error == "slippage exceeded"

        executor.fail_sells = False
        executor.sell_prices["MintAAA111"] = 0.5
        monitor.run_tick()

        assert not positions.get("MintAAA111").is_open
        assert len(executor.sells) == 2

    def test_sell_exception_counts_as_failure(self, monitor, positions, stub_oracle, executor):
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 0.5
        executor.raise_on_sell = TimeoutError("executor timed out")

        report = monitor.run_tick()

        assert report.failures == 1
        assert positions.get("MintAAA111").is_open

    def test_one_bad_position_does_not_block_others(self, monitor, positions, stub_oracle, executor):
        _open(positions, asset="MintAAA111")
        _open(positions, asset="MintBBB222")
        stub_oracle.prices["MintBBB222"] = 1.5
        executor.sell_prices["MintBBB222"] = 1.5
        original = stub_oracle.get_price_with_fallback

        def flaky(asset):
            if asset == "MintAAA111":
                raise RuntimeError("boom")
            return original(asset)

        stub_oracle.get_price_with_fallback = flaky

        report = monitor.run_tick()

        assert report.failures == 1
        assert report.exits == 1
        assert positions.get("MintAAA111").is_open
        assert not positions.get("MintBBB222").is_open

    def test_missing_price_skips_position(self, monitor, positions):
        _open(positions)

        report = monitor.run_tick()

        assert report.skipped == 1
        assert report.evaluated == 0
        assert positions.get("MintAAA111").is_open

    def test_circuit_active_does_bookkeeping_only(self, monitor, positions, stub_oracle, executor, breaker):
        for _ in range(3):
            breaker.record_outcome(-0.1)
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 2.0

        report = monitor.run_tick()

        assert report.circuit_active is True
        assert report.skipped == 1
        assert report.exits == 0
        assert executor.sells == []
        assert positions.get("MintAAA111").max_price_seen == pytest.approx(2.0)

    def test_closed_elsewhere_is_tolerated(self, monitor, positions, stub_oracle, executor):
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 0.5
        executor.sell_prices["MintAAA111"] = 0.5
        real_sell = executor.sell

        def racing_sell(asset, token_amount):
            positions.close(asset, exit_price=0.5, token_amount=token_amount, quote_out=0.5, reason="manual")
            return real_sell(asset, token_amount)

        executor.sell = racing_sell

        report = monitor.run_tick()

        assert report.exits == 0
        assert report.failures == 0
        assert len(positions.daily_ledger()) == 1

    def test_winning_exit_resets_loss_streak(self, monitor, positions, stub_oracle, executor, breaker):
        breaker.record_outcome(-0.1)
        breaker.record_outcome(-0.1)
        _open(positions)
        stub_oracle.prices["MintAAA111"] = 1.4
        executor.sell_prices["MintAAA111"] = 1.4

        monitor.run_tick()

        assert breaker.consecutive_losses == 0

    def test_heartbeat_and_metrics(self, monitor, positions, stub_oracle, executor, kv, metrics, clock):
        _open(positions, asset="MintAAA111")
        _open(positions, asset="MintBBB222")
        stub_oracle.prices["MintAAA111"] = 1.3
        stub_oracle.prices["MintBBB222"] = 1.0
        executor.sell_prices["MintAAA111"] = 1.3

        monitor.run_tick()

        assert kv.get(HEARTBEAT_KEY) == str(clock.now)
        assert metrics.last_tick().exits == 1
        assert metrics.last_tick().evaluated == 2
        assert metrics.exits_snapshot() == {"take_profit": 1}
        assert metrics.open_positions() == 1


class TestRunForever:
    def test_stops_after_current_tick(self, monitor):
        stop_event = Mock()
        stop_event.is_set.side_effect = [False, True]
        monitor.run_tick = Mock()

        monitor.run_forever(stop_event, interval_seconds=5.0)

        monitor.run_tick.assert_called_once()
        stop_event.wait.assert_called_once_with(5.0)

    def test_crashing_tick_does_not_kill_loop(self, monitor):
        stop_event = Mock()
        stop_event.is_set.side_effect = [False, False, True]
        monitor.run_tick = Mock(side_effect=[RuntimeError("store down"), None])

        monitor.run_forever(stop_event, interval_seconds=1.0)

        assert monitor.run_tick.call_count == 2
