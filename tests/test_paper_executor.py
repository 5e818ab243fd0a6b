"""
Tests for PaperExecutor fee math.
"""
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from core.execution import PaperExecutor
from core.models import PriceSource


@pytest.fixture
def oracle():
    oracle = Mock()
    oracle.get_price.return_value = SimpleNamespace(price=1e-7)
    oracle.calculate_current_value.return_value = SimpleNamespace(
        quote_value=0.065, price=1.3e-7, source=PriceSource.PRIMARY
    )
    return oracle


@pytest.fixture
def paper(oracle):
    return PaperExecutor(oracle, trade_fee=0.015, network_fee=0.000005, priority_fee=0.00005)


class TestBuy:
    def test_buy_applies_fees(self, paper, oracle):
        result = paper.buy("MintA", 0.05)

        assert result.success is True
        assert result.simulated is True
        assert result.quote_spent == pytest.approx(0.050055)
        assert result.tokens_received == pytest.approx(0.05 * 0.985 / 1e-7)
        assert result.entry_price == 1e-7
        assert result.execution_ref.startswith("paper_buy_")
        oracle.get_price.assert_called_once_with("MintA", force_fresh=True)

    def test_buy_without_price_fails(self, paper, oracle):
        oracle.get_price.return_value = None

        result = paper.buy("MintA", 0.05)

        assert result.success is False
        assert result.error == "price_unavailable"

    def test_non_positive_amount_fails(self, paper, oracle):
        assert paper.buy("MintA", 0).success is False
        oracle.get_price.assert_not_called()


class TestSell:
    def test_sell_nets_fees(self, paper):
        result = paper.sell("MintA", 500_000)

        assert result.success is True
        assert result.quote_received == pytest.approx(0.065 * 0.985 - 0.00005 - 0.000005)
        assert result.exit_price == 1.3e-7
        assert result.simulated is True

    def test_sell_without_value_fails(self, paper, oracle):
        oracle.calculate_current_value.return_value = None

        assert paper.sell("MintA", 500_000).error == "price_unavailable"

    def test_zero_tokens_fails(self, paper):
        assert paper.sell("MintA", 0).success is False


def test_from_config_defaults(oracle):
    paper = PaperExecutor.from_config(oracle, None)

    assert paper.trade_fee == 0.015
    assert paper.priority_fee == 0.00005
