"""
Multi-tier price oracle.

Lookup order for ``get_price``:
1. in-process cache (short TTL)
2. shared key-value cache (longer TTL), repopulating tier 1 on hit
3. ledger read through the retry policy, with a single fallback-endpoint try

Failures are logged and surface as ``None`` so the monitoring loop keeps
running. Invalid reserve data is never cached.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from core.exceptions import InvalidReserveData, LedgerReadError
from core.ledger_client import LedgerReader
from core.models import PriceSnapshot, PriceSource, ReserveState
from core.retry import RetryPolicy
from infra.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PRICE_KEY = "price:{asset}"
FINALIZED_KEY = "finalized:{asset}"
FINALIZED_TTL_SECONDS = 3 * 24 * 60 * 60


@dataclass(frozen=True)
class CurrentValue:
    asset: str
    token_amount: float
    quote_value: float
    price: float
    is_finalized: bool
    source: PriceSource


class PriceOracleCache:
    """
    Fetches, validates and caches asset prices.

    Constructed once at process start and shared by the entry coordinator,
    the exit monitor and the paper executor.
    """

    def __init__(
        self,
        reader: LedgerReader,
        fallback_reader: Optional[LedgerReader] = None,
        store: Optional[KeyValueStore] = None,
        positions=None,
        local_ttl_seconds: float = 3.0,
        shared_ttl_seconds: float = 10.0,
        finalized_ttl_seconds: float = FINALIZED_TTL_SECONDS,
        retry_policy: Optional[RetryPolicy] = None,
        min_sane_price: float = 1e-9,
        max_sane_price: float = 1.0,
        min_liquidity: float = 0.1,
        clock: Callable[[], float] = time.time,
        metrics=None,
    ):
        self._reader = reader
        self._fallback_reader = fallback_reader
        self._store = store
        self._positions = positions
        self.local_ttl_seconds = local_ttl_seconds
        self.shared_ttl_seconds = shared_ttl_seconds
        self.finalized_ttl_seconds = finalized_ttl_seconds
        self._retry = retry_policy or RetryPolicy(name="ledger_read")
        self.min_sane_price = min_sane_price
        self.max_sane_price = max_sane_price
        self.min_liquidity = min_liquidity
        self._clock = clock
        self._metrics = metrics

        self._local: Dict[str, Tuple[PriceSnapshot, float]] = {}
        self._hits = 0
        self._misses = 0
        self._read_errors = 0

    def attach_positions(self, positions) -> None:
        """Late-bind the position store used for entry-price fallback."""
        self._positions = positions

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_price(self, asset: str, force_fresh: bool = False) -> Optional[PriceSnapshot]:
        if not asset:
            return None
        now = self._clock()

        if not force_fresh:
            cached = self._local.get(asset)
            if cached and cached[1] > now:
                self._record_hit("local")
                return cached[0].with_source(PriceSource.CACHED)

            shared = self._read_shared(asset)
            if shared is not None:
                self._record_hit("shared")
                self._local[asset] = (shared, now + self.local_ttl_seconds)
                return shared.with_source(PriceSource.CACHED)

        self._misses += 1
        if self._metrics is not None:
            self._metrics.record_oracle_lookup("miss")

        try:
            reserves, source = self._fetch_reserves(asset)
            snapshot = self._build_snapshot(asset, reserves, source, now)
        except InvalidReserveData as e:
            self._record_read_error("invalid_data")
            logger.warning("Rejected reserve data for %s: %s", asset, e.reason)
            return None
        except Exception as e:
            self._record_read_error("read_failed")
            logger.warning("Price read failed for %s: %s", asset, e)
            return None

        self._write_through(snapshot, now)
        return snapshot

    def get_price_with_fallback(self, asset: str) -> Optional[PriceSnapshot]:
        """
        Fresh price, falling back to the open position's entry price.

        The synthesized snapshot carries ``source=entry-fallback`` so callers
        can tell it apart from a real observation.
        """
        primary = self.get_price(asset, force_fresh=True)
        if primary is not None and primary.price > 0:
            return primary

        position = self._positions.get(asset) if self._positions is not None else None
        if position is None or not position.is_open or not position.entry_price > 0:
            return primary

        logger.info("Using entry price fallback for %s (%.10f)", asset, position.entry_price)
        return PriceSnapshot(
            asset=asset,
            price=position.entry_price,
            base_reserves=primary.base_reserves if primary else 0.0,
            quote_reserves=primary.quote_reserves if primary else 0.0,
            total_supply=primary.total_supply if primary else 0.0,
            is_finalized=primary.is_finalized if primary else self.is_finalized(asset),
            source=PriceSource.ENTRY_FALLBACK,
            fetched_at=self._clock(),
        )

    def calculate_current_value(self, asset: str, token_amount: float) -> Optional[CurrentValue]:
        if not asset or not token_amount or token_amount <= 0:
            return None

        snapshot = self.get_price_with_fallback(asset)
        if snapshot is None or snapshot.price <= 0:
            return None

        return CurrentValue(
            asset=asset,
            token_amount=token_amount,
            quote_value=token_amount * snapshot.price,
            price=snapshot.price,
            is_finalized=snapshot.is_finalized,
            source=snapshot.source,
        )

    # ------------------------------------------------------------------
    # Finalization side index
    # ------------------------------------------------------------------

    def mark_finalized(self, asset: str) -> None:
        if self._store is None:
            return
        try:
            self._store.set(FINALIZED_KEY.format(asset=asset), "1", ttl_seconds=self.finalized_ttl_seconds)
        except Exception as e:
            logger.warning("Failed to mark %s finalized: %s", asset, e)

    def is_finalized(self, asset: str) -> bool:
        if self._store is None:
            return False
        try:
            return self._store.exists(FINALIZED_KEY.format(asset=asset))
        except Exception as e:
            logger.warning("Failed to read finalized flag for %s: %s", asset, e)
            return False

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cache_stats(self) -> Dict[str, float]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round((self._hits / total) * 100, 2) if total else 0.0,
            "read_errors": self._read_errors,
            "cache_size": len(self._local),
        }

    def clean_expired(self) -> int:
        now = self._clock()
        expired = [asset for asset, (_, expires_at) in self._local.items() if expires_at <= now]
        for asset in expired:
            self._local.pop(asset, None)
        if expired:
            logger.debug("Dropped %d expired price cache entries", len(expired))
        return len(expired)

    def invalidate(self, asset: str) -> None:
        self._local.pop(asset, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fetch_reserves(self, asset: str) -> Tuple[ReserveState, PriceSource]:
        used = {"source": PriceSource.PRIMARY}

        def primary() -> ReserveState:
            return self._reader.read_reserves(asset)

        fallback = None
        if self._fallback_reader is not None:
            def fallback() -> ReserveState:
                used["source"] = PriceSource.FALLBACK
                return self._fallback_reader.read_reserves(asset)

        reserves = self._retry.run(primary, fallback=fallback, retry_on=(LedgerReadError,))
        return reserves, used["source"]

    def _build_snapshot(self, asset: str, reserves: ReserveState, source: PriceSource, now: float) -> PriceSnapshot:
        if reserves.base_reserves <= 0:
            raise InvalidReserveData(asset, "base reserves must be positive")
        if reserves.quote_reserves <= 0:
            raise InvalidReserveData(asset, "quote reserves must be positive")
        if reserves.total_supply <= 0:
            raise InvalidReserveData(asset, "total supply must be positive")

        price = reserves.quote_reserves / reserves.base_reserves
        anomalous = (
            price < self.min_sane_price
            or price > self.max_sane_price
            or reserves.quote_reserves < self.min_liquidity
        )
        if anomalous:
            logger.warning(
                "Anomalous price for %s: %.12f (quote reserves %.4f)",
                asset, price, reserves.quote_reserves,
            )

        return PriceSnapshot(
            asset=asset,
            price=price,
            base_reserves=reserves.base_reserves,
            quote_reserves=reserves.quote_reserves,
            total_supply=reserves.total_supply,
            is_finalized=reserves.is_finalized,
            source=source,
            fetched_at=now,
            anomalous=anomalous,
        )

    def _write_through(self, snapshot: PriceSnapshot, now: float) -> None:
        self._local[snapshot.asset] = (snapshot, now + self.local_ttl_seconds)

        if self._store is not None:
            try:
                self._store.set(
                    PRICE_KEY.format(asset=snapshot.asset),
                    json.dumps(snapshot.to_dict()),
                    ttl_seconds=self.shared_ttl_seconds,
                )
            except Exception as e:
                logger.debug("Shared price cache write failed for %s: %s", snapshot.asset, e)

        if snapshot.is_finalized:
            self.mark_finalized(snapshot.asset)

    def _read_shared(self, asset: str) -> Optional[PriceSnapshot]:
        if self._store is None:
            return None
        try:
            raw = self._store.get(PRICE_KEY.format(asset=asset))
            if not raw:
                return None
            return PriceSnapshot.from_dict(json.loads(raw))
        except Exception as e:
            logger.debug("Shared price cache read failed for %s: %s", asset, e)
            return None

    def _record_hit(self, tier: str) -> None:
        self._hits += 1
        if self._metrics is not None:
            self._metrics.record_oracle_lookup(tier)

    def _record_read_error(self, kind: str) -> None:
        self._read_errors += 1
        if self._metrics is not None:
            self._metrics.record_oracle_error(kind)
