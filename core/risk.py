"""
Risk gate: admission control for new positions.

Checks run in a fixed order and the first failing check wins:

1. Slot budget for the signal's category (reserved / normal)
2. Global open-position cap
3. Daily realized loss cap
4. Liquidity floor
5. Entry price sanity

Rejections are decision values with a reason code, never exceptions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from core.models import EntryDecision, RiskBudget, SignalContext, SlotType

logger = logging.getLogger(__name__)


@dataclass
class RiskCheckResult:
    """Result of a single risk check"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = field(default_factory=list)

    @classmethod
    def reject(cls, code: str, detail: str) -> "RiskCheckResult":
        return cls(approved=False, reason=detail, violated_checks=[code])


@dataclass(frozen=True)
class RiskPolicy:
    budget: RiskBudget
    position_size: float = 0.05
    max_daily_loss: float = 2.0
    min_liquidity: float = 0.0
    max_entry_price: float = 1.0
    stop_loss_pct: float = 13.0
    take_profit_pct: float = 30.0

    @classmethod
    def from_config(cls, policy: Dict[str, Any]) -> "RiskPolicy":
        risk_cfg = policy.get("risk", {}) or {}
        exits_cfg = policy.get("exits", {}) or {}
        return cls(
            budget=RiskBudget(
                max_total_slots=int(risk_cfg.get("max_total_slots", 2)),
                reserved_slots=int(risk_cfg.get("reserved_slots", 0)),
            ),
            position_size=float(risk_cfg.get("position_size", 0.05)),
            max_daily_loss=abs(float(risk_cfg.get("max_daily_loss", 2.0))),
            min_liquidity=float(risk_cfg.get("min_liquidity", 0.0)),
            max_entry_price=float(risk_cfg.get("max_entry_price", 1.0)),
            stop_loss_pct=float(exits_cfg.get("stop_loss_pct", 13.0)),
            take_profit_pct=float(exits_cfg.get("take_profit_pct", 30.0)),
        )


class RiskGate:
    """
    Stateless decision function over PositionStore outputs.

    Occupancy and daily PnL are read fresh on every call; nothing is cached
    between decisions.
    """

    def __init__(self, policy: RiskPolicy, positions, metrics=None):
        self.policy = policy
        self.positions = positions
        self._metrics = metrics
        logger.info(
            "Initialized RiskGate: slots=%d (reserved=%d, normal=%d) size=%.4f max_daily_loss=%.4f",
            policy.budget.max_total_slots,
            policy.budget.reserved_slots,
            policy.budget.normal_slots,
            policy.position_size,
            policy.max_daily_loss,
        )

    def should_enter(self, asset: str, proposed_entry_price: float, signal: SignalContext) -> EntryDecision:
        slot_type = signal.slot_type

        try:
            open_positions = self.positions.list_open()
            daily_pnl = self.positions.daily_pnl()
        except Exception as e:
            logger.warning("Risk check inputs unavailable for %s: %s", asset, e, exc_info=True)
            return self._reject(asset, "risk_check_error", str(e))

        total_open = len(open_positions)
        reserved_open = sum(1 for p in open_positions if p.strategy_tag == SlotType.RESERVED.value)
        normal_open = total_open - reserved_open

        checks = (
            self._check_slots(slot_type, reserved_open, normal_open),
            self._check_total_positions(total_open),
            self._check_daily_loss(daily_pnl),
            self._check_liquidity(signal),
            self._check_price(proposed_entry_price),
        )
        for result in checks:
            if not result.approved:
                return self._reject(asset, result.violated_checks[0], result.reason)

        price = float(proposed_entry_price)
        decision = EntryDecision(
            allowed=True,
            size=self.policy.position_size,
            stop_loss=price * (1 - self.policy.stop_loss_pct / 100),
            take_profit=price * (1 + self.policy.take_profit_pct / 100),
            slot_type=slot_type,
        )
        logger.info(
            "Entry approved for %s: slot=%s size=%.4f sl=%.10f tp=%.10f (open %d/%d)",
            asset, slot_type.value, decision.size, decision.stop_loss, decision.take_profit,
            total_open, self.policy.budget.max_total_slots,
        )
        return decision

    def _check_slots(self, slot_type: SlotType, reserved_open: int, normal_open: int) -> RiskCheckResult:
        budget = self.policy.budget
        if slot_type == SlotType.RESERVED:
            if reserved_open >= budget.reserved_slots:
                return RiskCheckResult.reject(
                    "reserved_slots_full",
                    f"Reserved slots full ({reserved_open}/{budget.reserved_slots})",
                )
        elif normal_open >= budget.normal_slots:
            return RiskCheckResult.reject(
                "normal_slots_full",
                f"Normal slots full ({normal_open}/{budget.normal_slots})",
            )
        return RiskCheckResult(approved=True)

    def _check_total_positions(self, total_open: int) -> RiskCheckResult:
        cap = self.policy.budget.max_total_slots
        if total_open >= cap:
            return RiskCheckResult.reject(
                "max_total_positions",
                f"Max open positions reached ({total_open}/{cap})",
            )
        return RiskCheckResult(approved=True)

    def _check_daily_loss(self, daily_pnl: float) -> RiskCheckResult:
        if daily_pnl < -self.policy.max_daily_loss:
            return RiskCheckResult.reject(
                "daily_loss_limit",
                f"Daily loss limit reached ({daily_pnl:.4f} < -{self.policy.max_daily_loss})",
            )
        return RiskCheckResult(approved=True)

    def _check_liquidity(self, signal: SignalContext) -> RiskCheckResult:
        liquidity = signal.liquidity
        # unknown liquidity is not a rejection
        if liquidity is not None and liquidity < self.policy.min_liquidity:
            return RiskCheckResult.reject(
                "low_liquidity",
                f"Liquidity {liquidity:.4f} below floor {self.policy.min_liquidity}",
            )
        return RiskCheckResult(approved=True)

    def _check_price(self, price: Optional[float]) -> RiskCheckResult:
        if price is None or price <= 0 or price > self.policy.max_entry_price:
            return RiskCheckResult.reject("invalid_price", f"Invalid entry price: {price}")
        return RiskCheckResult(approved=True)

    def _reject(self, asset: str, code: str, detail: Optional[str]) -> EntryDecision:
        logger.info("Entry rejected for %s: %s (%s)", asset, code, detail)
        if self._metrics is not None:
            self._metrics.record_entry_rejection(code)
        return EntryDecision.reject(code)
