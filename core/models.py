"""
Risk core data model.

Snapshots and ledger entries are immutable; Position is the only mutable
record and PositionStore owns its persistence.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class PriceSource(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    CACHED = "cached"
    ENTRY_FALLBACK = "entry-fallback"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class SlotType(str, Enum):
    RESERVED = "reserved"
    NORMAL = "normal"


@dataclass(frozen=True)
class ReserveState:
    """Raw reserve read returned by a LedgerReader, already in decimal units."""
    base_reserves: float
    quote_reserves: float
    total_supply: float
    is_finalized: bool = False
    real_base_reserves: float = 0.0
    real_quote_reserves: float = 0.0


@dataclass(frozen=True)
class PriceSnapshot:
    asset: str
    price: float
    base_reserves: float
    quote_reserves: float
    total_supply: float
    is_finalized: bool
    source: PriceSource
    fetched_at: float
    anomalous: bool = False

    def with_source(self, source: PriceSource) -> "PriceSnapshot":
        return replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceSnapshot":
        return cls(
            asset=str(data["asset"]),
            price=float(data["price"]),
            base_reserves=float(data.get("base_reserves", 0.0)),
            quote_reserves=float(data.get("quote_reserves", 0.0)),
            total_supply=float(data.get("total_supply", 0.0)),
            is_finalized=bool(data.get("is_finalized", False)),
            source=PriceSource(data.get("source", PriceSource.PRIMARY.value)),
            fetched_at=float(data.get("fetched_at", 0.0)),
            anomalous=bool(data.get("anomalous", False)),
        )


@dataclass
class Position:
    """
    One speculative position, keyed by asset.

    max_price_seen only ever moves up while the position is open. Closing
    fills exit_* and pnl_* exactly once.
    """
    asset: str
    symbol: str
    entry_price: float
    entry_time: float
    quote_amount_in: float
    token_amount: float
    max_price_seen: float
    status: PositionStatus = PositionStatus.OPEN
    strategy_tag: str = SlotType.NORMAL.value
    entry_ref: Optional[str] = None
    exit_price: Optional[float] = None
    exit_time: Optional[float] = None
    quote_amount_out: Optional[float] = None
    pnl_quote: Optional[float] = None
    pnl_percent: Optional[float] = None
    close_reason: Optional[str] = None
    exit_ref: Optional[str] = None
    tokens_sold: Optional[float] = None

    REQUIRED_FIELDS = ("asset", "entry_price", "entry_time", "quote_amount_in", "token_amount", "status")

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def hold_seconds(self, now: float) -> float:
        return max(0.0, now - self.entry_time)

    def to_record(self) -> Dict[str, str]:
        """Flatten to a string hash suitable for the key-value store."""
        record: Dict[str, str] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            record[key] = str(value)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional["Position"]:
        """
        Rebuild a Position from a stored hash.

        Returns None for partial or corrupted records instead of raising.
        """
        if not record:
            return None
        if any(not record.get(name) for name in cls.REQUIRED_FIELDS):
            return None

        def _opt(name: str) -> Optional[float]:
            raw = record.get(name)
            if raw in (None, "", "None"):
                return None
            return float(raw)

        try:
            entry_price = float(record["entry_price"])
            return cls(
                asset=str(record["asset"]),
                symbol=str(record.get("symbol") or "UNKNOWN"),
                entry_price=entry_price,
                entry_time=float(record["entry_time"]),
                quote_amount_in=float(record["quote_amount_in"]),
                token_amount=float(record["token_amount"]),
                max_price_seen=float(record.get("max_price_seen") or entry_price),
                status=PositionStatus(record["status"]),
                strategy_tag=str(record.get("strategy_tag") or SlotType.NORMAL.value),
                entry_ref=record.get("entry_ref"),
                exit_price=_opt("exit_price"),
                exit_time=_opt("exit_time"),
                quote_amount_out=_opt("quote_amount_out"),
                pnl_quote=_opt("pnl_quote"),
                pnl_percent=_opt("pnl_percent"),
                close_reason=record.get("close_reason"),
                exit_ref=record.get("exit_ref"),
                tokens_sold=_opt("tokens_sold"),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class TradeLedgerEntry:
    asset: str
    symbol: str
    strategy_tag: str
    entry_price: float
    exit_price: float
    quote_amount_in: float
    quote_amount_out: float
    pnl_quote: float
    pnl_percent: float
    close_reason: str
    closed_at: float

    @property
    def day(self) -> str:
        return day_key(self.closed_at)

    @classmethod
    def from_position(cls, position: Position) -> "TradeLedgerEntry":
        return cls(
            asset=position.asset,
            symbol=position.symbol,
            strategy_tag=position.strategy_tag,
            entry_price=position.entry_price,
            exit_price=float(position.exit_price or 0.0),
            quote_amount_in=position.quote_amount_in,
            quote_amount_out=float(position.quote_amount_out or 0.0),
            pnl_quote=float(position.pnl_quote or 0.0),
            pnl_percent=float(position.pnl_percent or 0.0),
            close_reason=position.close_reason or "",
            closed_at=float(position.exit_time or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeLedgerEntry":
        return cls(
            asset=str(data["asset"]),
            symbol=str(data.get("symbol", "UNKNOWN")),
            strategy_tag=str(data.get("strategy_tag", SlotType.NORMAL.value)),
            entry_price=float(data.get("entry_price", 0.0)),
            exit_price=float(data.get("exit_price", 0.0)),
            quote_amount_in=float(data.get("quote_amount_in", 0.0)),
            quote_amount_out=float(data.get("quote_amount_out", 0.0)),
            pnl_quote=float(data["pnl_quote"]),
            pnl_percent=float(data.get("pnl_percent", 0.0)),
            close_reason=str(data.get("close_reason", "")),
            closed_at=float(data.get("closed_at", 0.0)),
        )


@dataclass(frozen=True)
class DailyStats:
    day: str
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    best_pnl: float = 0.0
    worst_pnl: float = 0.0


@dataclass(frozen=True)
class RiskBudget:
    max_total_slots: int
    reserved_slots: int = 0

    def __post_init__(self):
        if self.reserved_slots < 0 or self.max_total_slots < 0:
            raise ValueError("slot counts must be non-negative")
        if self.reserved_slots > self.max_total_slots:
            raise ValueError(
                f"reserved_slots ({self.reserved_slots}) cannot exceed max_total_slots ({self.max_total_slots})"
            )

    @property
    def normal_slots(self) -> int:
        return self.max_total_slots - self.reserved_slots


@dataclass(frozen=True)
class SignalContext:
    """New-asset event delivered by the signal source."""
    asset: str
    symbol: str = "UNKNOWN"
    category: str = SlotType.NORMAL.value
    quote_reserves: Optional[float] = None
    liquidity_hint: Optional[float] = None
    volume_hint: Optional[float] = None

    @property
    def slot_type(self) -> SlotType:
        if str(self.category).lower() == SlotType.RESERVED.value:
            return SlotType.RESERVED
        return SlotType.NORMAL

    @property
    def liquidity(self) -> Optional[float]:
        if self.quote_reserves is not None:
            return self.quote_reserves
        return self.liquidity_hint


@dataclass(frozen=True)
class EntryDecision:
    allowed: bool
    reason: Optional[str] = None
    size: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    slot_type: Optional[SlotType] = None

    @classmethod
    def reject(cls, reason: str) -> "EntryDecision":
        return cls(allowed=False, reason=reason)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of an executor buy/sell call."""
    success: bool
    asset: str
    execution_ref: Optional[str] = None
    tokens_received: float = 0.0
    quote_spent: float = 0.0
    entry_price: Optional[float] = None
    quote_received: float = 0.0
    exit_price: Optional[float] = None
    simulated: bool = False
    error: Optional[str] = None

    @classmethod
    def failed(cls, asset: str, error: str) -> "ExecutionResult":
        return cls(success=False, asset=asset, error=error)


@dataclass(frozen=True)
class ExitSignal:
    asset: str
    rule: str
    reason: str
    current_price: float
    entry_price: float
    max_price_seen: float
    pnl_percent: float
    drawdown_percent: float
    hold_seconds: float


@dataclass
class TickReport:
    started_at: float
    evaluated: int = 0
    exits: int = 0
    failures: int = 0
    skipped: int = 0
    circuit_active: bool = False
    duration_seconds: float = 0.0
    closed_assets: list = field(default_factory=list)


def day_key(ts: float) -> str:
    """Calendar day (UTC) of an epoch timestamp, YYYY-MM-DD."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()
