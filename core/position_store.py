"""
Durable position lifecycle and daily trade ledger.

Layout in the shared store:
    position:{asset}       hash, one record per asset (latest position)
    open_positions         set of assets with an open record
    trades:{YYYY-MM-DD}    list of JSON ledger entries, UTC day of close

open/close/update_max_price are serialized per asset with the store's key
lock so a close can never succeed twice for the same position.
"""

import json
import logging
import time
from datetime import date, timedelta
from typing import Callable, List, Optional

from core.exceptions import DuplicateOpenPosition, PositionNotFound
from core.models import (
    DailyStats,
    Position,
    PositionStatus,
    SlotType,
    TradeLedgerEntry,
    day_key,
)
from infra.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

POSITION_KEY = "position:{asset}"
OPEN_INDEX_KEY = "open_positions"
LEDGER_KEY = "trades:{day}"
LEDGER_KEY_PREFIX = "trades:"


def compute_pnl(quote_in: float, quote_out: float, entry_price: float, exit_price: float):
    """
    Realized PnL in quote units and percent.

    Percent is the quote-amount ratio; when nothing was committed it falls
    back to the price ratio.
    """
    pnl_quote = quote_out - quote_in
    if quote_in > 0:
        pnl_percent = pnl_quote / quote_in * 100
    elif entry_price > 0:
        pnl_percent = (exit_price - entry_price) / entry_price * 100
    else:
        pnl_percent = 0.0
    return pnl_quote, pnl_percent


class PositionStore:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        record_ttl_seconds: Optional[float] = None,
    ):
        self._store = store
        self._clock = clock
        self.record_ttl_seconds = record_ttl_seconds

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(
        self,
        asset: str,
        symbol: str,
        entry_price: float,
        quote_in: float,
        token_amount: float,
        execution_ref: Optional[str] = None,
        strategy_tag: str = SlotType.NORMAL.value,
    ) -> Position:
        """
        Create an open position.

        Raises:
            DuplicateOpenPosition: an open record already exists for ``asset``
        """
        key = POSITION_KEY.format(asset=asset)
        with self._store.lock(key):
            existing = self.get(asset)
            if existing is not None and existing.is_open:
                raise DuplicateOpenPosition(asset)

            position = Position(
                asset=asset,
                symbol=symbol or "UNKNOWN",
                entry_price=float(entry_price),
                entry_time=self._clock(),
                quote_amount_in=float(quote_in),
                token_amount=float(token_amount),
                max_price_seen=float(entry_price),
                status=PositionStatus.OPEN,
                strategy_tag=strategy_tag,
                entry_ref=execution_ref,
            )

            # a closed record from an earlier trade is replaced, never reopened
            self._store.delete(key)
            self._store.hset(key, position.to_record())
            if self.record_ttl_seconds:
                self._store.expire(key, self.record_ttl_seconds)
            self._store.sadd(OPEN_INDEX_KEY, asset)

        logger.info(
            "Opened position %s (%s): entry=%.10f quote_in=%.4f tokens=%.2f tag=%s",
            asset, position.symbol, position.entry_price, position.quote_amount_in,
            position.token_amount, strategy_tag,
        )
        return position

    def update_max_price(self, asset: str, observed_price: float) -> bool:
        """
        Raise max_price_seen to ``observed_price`` if it is higher.

        Returns True when the stored peak changed. A closed or missing
        position is left untouched.
        """
        key = POSITION_KEY.format(asset=asset)
        with self._store.lock(key):
            position = self.get(asset)
            if position is None or not position.is_open:
                return False
            if observed_price <= position.max_price_seen:
                return False
            self._store.hset(key, {"max_price_seen": str(float(observed_price))})

        logger.debug("New peak for %s: %.10f", asset, observed_price)
        return True

    def close(
        self,
        asset: str,
        exit_price: float,
        token_amount: float,
        quote_out: float,
        reason: str,
        execution_ref: Optional[str] = None,
    ) -> Position:
        """
        Close the open position and append one ledger entry.

        Raises:
            PositionNotFound: no open record exists for ``asset``
        """
        key = POSITION_KEY.format(asset=asset)
        with self._store.lock(key):
            position = self.get(asset)
            if position is None or not position.is_open:
                raise PositionNotFound(asset)

            now = self._clock()
            pnl_quote, pnl_percent = compute_pnl(
                position.quote_amount_in, float(quote_out), position.entry_price, float(exit_price)
            )

            position.status = PositionStatus.CLOSED
            position.exit_price = float(exit_price)
            position.exit_time = now
            position.quote_amount_out = float(quote_out)
            position.tokens_sold = float(token_amount)
            position.pnl_quote = pnl_quote
            position.pnl_percent = pnl_percent
            position.close_reason = reason
            position.exit_ref = execution_ref

            self._store.hset(key, position.to_record())
            self._store.srem(OPEN_INDEX_KEY, asset)

            entry = TradeLedgerEntry.from_position(position)
            self._store.rpush(LEDGER_KEY.format(day=entry.day), json.dumps(entry.to_dict()))

        logger.info(
            "Closed position %s (%s): reason=%s pnl=%.6f (%.2f%%)",
            asset, position.symbol, reason, pnl_quote, pnl_percent,
        )
        return position

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, asset: str) -> Optional[Position]:
        return Position.from_record(self._store.hgetall(POSITION_KEY.format(asset=asset)))

    def list_open(self) -> List[Position]:
        positions = []
        for asset in self._store.smembers(OPEN_INDEX_KEY):
            position = self.get(asset)
            if position is None:
                logger.debug("Skipping unreadable position record for %s", asset)
                continue
            if not position.is_open:
                continue
            positions.append(position)
        positions.sort(key=lambda p: p.entry_time)
        return positions

    def count_open(self, strategy_tag: Optional[str] = None) -> int:
        positions = self.list_open()
        if strategy_tag is None:
            return len(positions)
        return sum(1 for p in positions if p.strategy_tag == strategy_tag)

    def today(self) -> str:
        return day_key(self._clock())

    def daily_ledger(self, day: Optional[str] = None) -> List[TradeLedgerEntry]:
        day = day or self.today()
        entries = []
        for raw in self._store.lrange(LEDGER_KEY.format(day=day), 0, -1):
            try:
                entries.append(TradeLedgerEntry.from_dict(json.loads(raw)))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed ledger entry on %s: %s", day, e)
        return entries

    def daily_pnl(self, day: Optional[str] = None) -> float:
        return sum(entry.pnl_quote for entry in self.daily_ledger(day))

    def daily_stats(self, day: Optional[str] = None) -> DailyStats:
        day = day or self.today()
        pnls = [entry.pnl_quote for entry in self.daily_ledger(day)]
        if not pnls:
            return DailyStats(day=day)

        wins = sum(1 for p in pnls if p > 0)
        losses = sum(1 for p in pnls if p < 0)
        total = sum(pnls)
        return DailyStats(
            day=day,
            total_trades=len(pnls),
            wins=wins,
            losses=losses,
            win_rate=wins / len(pnls) * 100,
            total_pnl=total,
            avg_pnl=total / len(pnls),
            best_pnl=max(pnls),
            worst_pnl=min(pnls),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def find_ghosts(self) -> List[str]:
        """Open-index members whose record is missing, unreadable, or not open."""
        ghosts = []
        for asset in self._store.smembers(OPEN_INDEX_KEY):
            position = self.get(asset)
            if position is None or not position.is_open:
                ghosts.append(asset)
        return sorted(ghosts)

    def purge_ghosts(self) -> List[str]:
        ghosts = self.find_ghosts()
        if ghosts:
            self._store.srem(OPEN_INDEX_KEY, *ghosts)
            logger.info("Removed %d ghost entries from open index: %s", len(ghosts), ghosts)
        return ghosts

    def find_closed_records(self) -> List[str]:
        closed = []
        prefix = POSITION_KEY.format(asset="")
        for key in self._store.keys(POSITION_KEY.format(asset="*")):
            asset = key[len(prefix):]
            position = self.get(asset)
            if position is not None and position.status == PositionStatus.CLOSED:
                closed.append(asset)
        return sorted(closed)

    def delete_closed_records(self) -> List[str]:
        closed = self.find_closed_records()
        for asset in closed:
            key = POSITION_KEY.format(asset=asset)
            with self._store.lock(key):
                position = self.get(asset)
                if position is not None and position.status == PositionStatus.CLOSED:
                    self._store.delete(key)
        if closed:
            logger.info("Deleted %d closed position records", len(closed))
        return closed

    def find_expired_ledger_days(self, retention_days: int, today: Optional[str] = None) -> List[str]:
        today_date = date.fromisoformat(today or self.today())
        cutoff = today_date - timedelta(days=retention_days)
        expired = []
        for key in self._store.keys(LEDGER_KEY_PREFIX + "*"):
            try:
                day = date.fromisoformat(key[len(LEDGER_KEY_PREFIX):])
            except ValueError:
                continue
            if day < cutoff:
                expired.append(key)
        return sorted(expired)

    def prune_ledger(self, retention_days: int, today: Optional[str] = None) -> List[str]:
        """Delete ledger days older than ``retention_days`` before ``today``."""
        expired = self.find_expired_ledger_days(retention_days, today)
        if expired:
            self._store.delete(*expired)
            logger.info("Pruned %d ledger days older than %d days", len(expired), retention_days)
        return expired
