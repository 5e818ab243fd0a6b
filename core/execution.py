"""
Trade executor boundary.

Live transaction building and signing live outside this package; LIVE mode
injects an object satisfying ``TradeExecutor``. DRY_RUN uses
``PaperExecutor``, which simulates fills from the price oracle with the
same fee structure a live swap pays.

The core never retries executor calls itself: each call is one logical
trade attempt.
"""

import logging
import uuid
from typing import Any, Dict, Optional, Protocol

from core.models import ExecutionResult

logger = logging.getLogger(__name__)

TRADE_FEE = 0.015
NETWORK_FEE = 0.000005
PRIORITY_FEE = 0.00005


class TradeExecutor(Protocol):
    def buy(self, asset: str, quote_amount: float) -> ExecutionResult:
        ...

    def sell(self, asset: str, token_amount: float) -> ExecutionResult:
        ...


class PaperExecutor:
    """
    Simulated executor.

    Buy:  spends quote_amount + priority_fee + network_fee and receives
          quote_amount * (1 - trade_fee) / price tokens.
    Sell: returns value * (1 - trade_fee) - priority_fee - network_fee.
    """

    def __init__(
        self,
        oracle,
        trade_fee: float = TRADE_FEE,
        network_fee: float = NETWORK_FEE,
        priority_fee: float = PRIORITY_FEE,
    ):
        self._oracle = oracle
        self.trade_fee = trade_fee
        self.network_fee = network_fee
        self.priority_fee = priority_fee
        logger.info(
            "Initialized PaperExecutor: trade_fee=%.2f%% priority_fee=%s network_fee=%s",
            trade_fee * 100, priority_fee, network_fee,
        )

    @classmethod
    def from_config(cls, oracle, cfg: Optional[Dict[str, Any]]) -> "PaperExecutor":
        cfg = cfg or {}
        return cls(
            oracle,
            trade_fee=float(cfg.get("trade_fee", TRADE_FEE)),
            network_fee=float(cfg.get("network_fee", NETWORK_FEE)),
            priority_fee=float(cfg.get("priority_fee", PRIORITY_FEE)),
        )

    def buy(self, asset: str, quote_amount: float) -> ExecutionResult:
        if quote_amount <= 0:
            return ExecutionResult.failed(asset, "quote_amount must be positive")

        snapshot = self._oracle.get_price(asset, force_fresh=True)
        if snapshot is None or snapshot.price <= 0:
            return ExecutionResult.failed(asset, "price_unavailable")

        total_cost = quote_amount + self.priority_fee + self.network_fee
        tokens = quote_amount * (1 - self.trade_fee) / snapshot.price
        logger.info(
            "[PAPER] BUY %s: %.2f tokens @ %.12f (spent %.6f incl. fees)",
            asset, tokens, snapshot.price, total_cost,
        )
        return ExecutionResult(
            success=True,
            asset=asset,
            execution_ref=f"paper_buy_{uuid.uuid4().hex[:12]}",
            tokens_received=tokens,
            quote_spent=total_cost,
            entry_price=snapshot.price,
            simulated=True,
        )

    def sell(self, asset: str, token_amount: float) -> ExecutionResult:
        if token_amount <= 0:
            return ExecutionResult.failed(asset, "token_amount must be positive")

        value = self._oracle.calculate_current_value(asset, token_amount)
        if value is None:
            return ExecutionResult.failed(asset, "price_unavailable")

        net = value.quote_value * (1 - self.trade_fee) - self.priority_fee - self.network_fee
        logger.info(
            "[PAPER] SELL %s: gross %.6f, net %.6f after fees (price source %s)",
            asset, value.quote_value, net, value.source.value,
        )
        return ExecutionResult(
            success=True,
            asset=asset,
            execution_ref=f"paper_sell_{uuid.uuid4().hex[:12]}",
            quote_received=net,
            exit_price=value.price,
            simulated=True,
        )
