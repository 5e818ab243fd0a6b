"""
Tests for RiskGate

Slot partitioning, daily loss cap, liquidity floor, price sanity and the
order the checks run in.
"""
from unittest.mock import Mock

import pytest

from core.models import RiskBudget, SignalContext, SlotType
from core.risk import RiskGate, RiskPolicy


def _policy(**overrides):
    base = dict(
        budget=RiskBudget(max_total_slots=2, reserved_slots=1),
        position_size=0.05,
        max_daily_loss=2.0,
        min_liquidity=5.0,
        max_entry_price=1.0,
        stop_loss_pct=13.0,
        take_profit_pct=30.0,
    )
    base.update(overrides)
    return RiskPolicy(**base)


def _open(positions, asset, tag):
    positions.open(asset, asset, entry_price=1e-7, quote_in=0.05, token_amount=500_000, strategy_tag=tag)


def _normal(asset="MintNEW", quote_reserves=30.0):
    return SignalContext(asset=asset, symbol="NEW", category="normal", quote_reserves=quote_reserves)


def _reserved(asset="MintRSV", quote_reserves=30.0):
    return SignalContext(asset=asset, symbol="RSV", category="reserved", quote_reserves=quote_reserves)


class TestApproval:
    def test_approved_entry_carries_size_and_levels(self, positions):
        gate = RiskGate(_policy(), positions)

        decision = gate.should_enter("MintNEW", 1e-7, _normal())

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.size == 0.05
        assert decision.stop_loss == pytest.approx(0.87e-7)
        assert decision.take_profit == pytest.approx(1.3e-7)
        assert decision.slot_type == SlotType.NORMAL

    def test_reserved_category_uses_reserved_slot(self, positions):
        gate = RiskGate(_policy(), positions)

        decision = gate.should_enter("MintRSV", 1e-7, _reserved())

        assert decision.allowed is True
        assert decision.slot_type == SlotType.RESERVED


class TestSlots:
    """max_total_slots=2, reserved_slots=1 -> one normal, one reserved"""

    def test_normal_slots_full(self, positions):
        _open(positions, "MintA", "normal")
        gate = RiskGate(_policy(), positions)

        decision = gate.should_enter("MintNEW", 1e-7, _normal())

        assert decision.allowed is False
        assert decision.reason == "normal_slots_full"

    def test_reserved_slot_still_free_when_normal_full(self, positions):
        _open(positions, "MintA", "normal")
        gate = RiskGate(_policy(), positions)

        assert gate.should_enter("MintRSV", 1e-7, _reserved()).allowed is True

    def test_reserved_slots_full(self, positions):
        _open(positions, "MintR", "reserved")
        gate = RiskGate(_policy(), positions)

        decision = gate.should_enter("MintRSV", 1e-7, _reserved())

        assert decision.reason == "reserved_slots_full"

    def test_zero_reserved_slots_rejects_reserved_category(self, positions):
        gate = RiskGate(_policy(budget=RiskBudget(max_total_slots=3, reserved_slots=0)), positions)

        assert gate.should_enter("MintRSV", 1e-7, _reserved()).reason == "reserved_slots_full"

    def test_total_cap_backstop(self, positions):
        # budget change while positions are open: partition says room, total cap says no
        _open(positions, "MintA", "normal")
        _open(positions, "MintB", "normal")
        gate = RiskGate(_policy(budget=RiskBudget(max_total_slots=2, reserved_slots=1)), positions)

        assert gate.should_enter("MintRSV", 1e-7, _reserved()).reason == "max_total_positions"

    def test_budget_rejects_reserved_above_total(self):
        with pytest.raises(ValueError):
            RiskBudget(max_total_slots=1, reserved_slots=2)


class TestDailyLoss:
    def test_loss_beyond_cap_rejects(self, positions):
        _open(positions, "MintA", "normal")
        positions.close("MintA", exit_price=1e-8, token_amount=1, quote_out=0.0, reason="stop_loss")
        gate = RiskGate(_policy(max_daily_loss=0.04), positions)

        decision = gate.should_enter("MintNEW", 1e-7, _normal())

        assert decision.reason == "daily_loss_limit"

    def test_loss_at_cap_still_allowed(self, positions):
        _open(positions, "MintA", "normal")
        positions.close("MintA", exit_price=5e-8, token_amount=1, quote_out=0.025, reason="stop_loss")
        gate = RiskGate(_policy(max_daily_loss=0.025), positions)

        assert gate.should_enter("MintNEW", 1e-7, _normal()).allowed is True


class TestLiquidityAndPrice:
    def test_low_liquidity_rejects(self, positions):
        gate = RiskGate(_policy(), positions)

        decision = gate.should_enter("MintNEW", 1e-7, _normal(quote_reserves=1.0))

        assert decision.reason == "low_liquidity"

    def test_unknown_liquidity_is_not_a_rejection(self, positions):
        gate = RiskGate(_policy(), positions)
        signal = SignalContext(asset="MintNEW", symbol="NEW")

        assert gate.should_enter("MintNEW", 1e-7, signal).allowed is True

    def test_liquidity_hint_used_when_reserves_unknown(self, positions):
        gate = RiskGate(_policy(), positions)
        signal = SignalContext(asset="MintNEW", symbol="NEW", liquidity_hint=1.0)

        assert gate.should_enter("MintNEW", 1e-7, signal).reason == "low_liquidity"

    @pytest.mark.parametrize("price", [0.0, -1e-7, 1.5])
    def test_invalid_price_rejects(self, positions, price):
        gate = RiskGate(_policy(), positions)

        assert gate.should_enter("MintNEW", price, _normal()).reason == "invalid_price"


class TestOrdering:
    def test_slots_checked_before_daily_loss(self, positions):
        _open(positions, "MintA", "normal")
        _open(positions, "MintB", "normal")
        positions.close("MintB", exit_price=1e-8, token_amount=1, quote_out=0.0, reason="stop_loss")
        gate = RiskGate(_policy(max_daily_loss=0.01), positions)

        assert gate.should_enter("MintNEW", 1e-7, _normal()).reason == "normal_slots_full"

    def test_daily_loss_checked_before_price(self, positions):
        _open(positions, "MintA", "normal")
        positions.close("MintA", exit_price=1e-8, token_amount=1, quote_out=0.0, reason="stop_loss")
        gate = RiskGate(_policy(max_daily_loss=0.01), positions)

        assert gate.should_enter("MintNEW", 0.0, _normal(quote_reserves=0.1)).reason == "daily_loss_limit"

    def test_store_failure_rejects_with_risk_check_error(self):
        broken = Mock()
        broken.list_open.side_effect = ConnectionError("store down")
        metrics = Mock()
        gate = RiskGate(_policy(), broken, metrics=metrics)

        decision = gate.should_enter("MintNEW", 1e-7, _normal())

        assert decision.allowed is False
        assert decision.reason == "risk_check_error"
        metrics.record_entry_rejection.assert_called_once_with("risk_check_error")


class TestPolicyFromConfig:
    def test_reads_risk_and_exit_sections(self):
        policy = RiskPolicy.from_config(
            {
                "risk": {"max_total_slots": 4, "reserved_slots": 1, "position_size": 0.1, "max_daily_loss": -3},
                "exits": {"stop_loss_pct": 10, "take_profit_pct": 50},
            }
        )

        assert policy.budget.normal_slots == 3
        assert policy.position_size == 0.1
        assert policy.max_daily_loss == 3.0
        assert policy.stop_loss_pct == 10.0
        assert policy.take_profit_pct == 50.0
