"""
Tests for PositionStore

Lifecycle (open -> peak updates -> close), the open index, the daily trade
ledger and the maintenance helpers.
"""
import json
import threading

import pytest

from core.exceptions import DuplicateOpenPosition, PositionNotFound
from core.models import PositionStatus, day_key
from core.position_store import LEDGER_KEY, OPEN_INDEX_KEY, POSITION_KEY, PositionStore, compute_pnl

ASSET = "MintAAA111"


def _open(positions, asset=ASSET, entry_price=1e-7, quote_in=0.05, tag="normal"):
    return positions.open(
        asset,
        asset[:4].upper(),
        entry_price=entry_price,
        quote_in=quote_in,
        token_amount=quote_in / entry_price,
        execution_ref=f"buy-{asset}",
        strategy_tag=tag,
    )


class TestOpen:
    def test_open_creates_record_and_index_entry(self, positions, kv, clock):
        position = _open(positions)

        assert position.is_open
        assert position.entry_time == clock.now
        assert position.max_price_seen == position.entry_price
        assert kv.smembers(OPEN_INDEX_KEY) == {ASSET}
        assert kv.hget(POSITION_KEY.format(asset=ASSET), "status") == "open"

    def test_duplicate_open_raises(self, positions):
        _open(positions)

        with pytest.raises(DuplicateOpenPosition) as exc_info:
            _open(positions)
        assert exc_info.value.asset == ASSET

    def test_reopen_after_close_starts_fresh(self, positions, clock):
        _open(positions)
        positions.close(ASSET, exit_price=1.1e-7, token_amount=500_000, quote_out=0.055, reason="take_profit")
        clock.advance(60)

        reopened = _open(positions, entry_price=2e-7)

        assert reopened.is_open
        assert reopened.entry_price == 2e-7
        assert positions.get(ASSET).exit_price is None

    def test_record_ttl_applied_when_configured(self, kv, clock):
        store = PositionStore(kv, clock=clock, record_ttl_seconds=3600)
        _open(store)

        assert kv.ttl(POSITION_KEY.format(asset=ASSET)) == pytest.approx(3600)

    def test_no_record_ttl_by_default(self, positions, kv):
        _open(positions)

        assert kv.ttl(POSITION_KEY.format(asset=ASSET)) is None


class TestMaxPrice:
    def test_peak_only_moves_up(self, positions):
        _open(positions)

        assert positions.update_max_price(ASSET, 1.5e-7) is True
        assert positions.update_max_price(ASSET, 1.2e-7) is False
        assert positions.update_max_price(ASSET, 1.5e-7) is False
        assert positions.get(ASSET).max_price_seen == pytest.approx(1.5e-7)

    def test_update_on_missing_position_is_noop(self, positions):
        assert positions.update_max_price("nope", 1.0) is False

    def test_update_on_closed_position_is_noop(self, positions):
        _open(positions)
        positions.close(ASSET, exit_price=9e-8, token_amount=500_000, quote_out=0.045, reason="stop_loss")

        assert positions.update_max_price(ASSET, 5e-7) is False
        assert positions.get(ASSET).max_price_seen == pytest.approx(1e-7)


class TestClose:
    def test_close_fills_exit_fields_and_pnl(self, positions, clock):
        _open(positions, quote_in=0.05)
        clock.advance(120)

        closed = positions.close(
            ASSET, exit_price=1.3e-7, token_amount=500_000, quote_out=0.065,
            reason="take_profit", execution_ref="sell-1",
        )

        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_time == clock.now
        assert closed.pnl_quote == pytest.approx(0.015)
        assert closed.pnl_percent == pytest.approx(30.0)
        assert closed.close_reason == "take_profit"
        assert closed.exit_ref == "sell-1"
        assert closed.tokens_sold == 500_000

    def test_close_removes_from_open_index(self, positions, kv):
        _open(positions)
        positions.close(ASSET, exit_price=1e-7, token_amount=500_000, quote_out=0.05, reason="stagnation")

        assert ASSET not in kv.smembers(OPEN_INDEX_KEY)
        assert positions.list_open() == []

    def test_close_appends_exactly_one_ledger_entry(self, positions, kv, clock):
        _open(positions)
        positions.close(ASSET, exit_price=8e-8, token_amount=500_000, quote_out=0.04, reason="stop_loss")

        raw = kv.lrange(LEDGER_KEY.format(day=day_key(clock.now)), 0, -1)
        assert len(raw) == 1
        entry = json.loads(raw[0])
        assert entry["asset"] == ASSET
        assert entry["pnl_quote"] == pytest.approx(-0.01)
        assert entry["close_reason"] == "stop_loss"

    def test_second_close_raises_and_does_not_double_count(self, positions):
        _open(positions)
        positions.close(ASSET, exit_price=8e-8, token_amount=500_000, quote_out=0.04, reason="stop_loss")

        with pytest.raises(PositionNotFound):
            positions.close(ASSET, exit_price=8e-8, token_amount=500_000, quote_out=0.04, reason="stop_loss")
        assert len(positions.daily_ledger()) == 1

    def test_concurrent_close_succeeds_exactly_once(self, positions):
        _open(positions)
        workers = 8
        barrier = threading.Barrier(workers)
        closed, not_found = [], []

        def close():
            barrier.wait(timeout=5)
            try:
                closed.append(
                    positions.close(ASSET, exit_price=8e-8, token_amount=500_000, quote_out=0.04, reason="stop_loss")
                )
            except PositionNotFound:
                not_found.append(ASSET)

        threads = [threading.Thread(target=close) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(closed) == 1
        assert len(not_found) == workers - 1
        assert len(positions.daily_ledger()) == 1
        assert positions.list_open() == []

    def test_close_unknown_asset_raises(self, positions):
        with pytest.raises(PositionNotFound):
            positions.close("ghost", exit_price=1.0, token_amount=1.0, quote_out=1.0, reason="manual")


class TestComputePnl:
    def test_quote_ratio_preferred(self):
        pnl_quote, pnl_percent = compute_pnl(0.05, 0.04, entry_price=1e-7, exit_price=2e-7)

        assert pnl_quote == pytest.approx(-0.01)
        assert pnl_percent == pytest.approx(-20.0)

    def test_price_ratio_when_nothing_committed(self):
        _, pnl_percent = compute_pnl(0.0, 0.0, entry_price=1e-7, exit_price=1.5e-7)

        assert pnl_percent == pytest.approx(50.0)

    def test_zero_everything(self):
        assert compute_pnl(0.0, 0.0, 0.0, 0.0) == (0.0, 0.0)


class TestQueries:
    def test_list_open_sorted_by_entry_time(self, positions, clock):
        _open(positions, asset="MintBBB222")
        clock.advance(10)
        _open(positions, asset="MintAAA111")

        assert [p.asset for p in positions.list_open()] == ["MintBBB222", "MintAAA111"]

    def test_list_open_skips_corrupt_records(self, positions, kv):
        _open(positions)
        kv.sadd(OPEN_INDEX_KEY, "MintBROKEN")
        kv.hset(POSITION_KEY.format(asset="MintBROKEN"), {"asset": "MintBROKEN", "entry_price": "abc"})

        assert [p.asset for p in positions.list_open()] == [ASSET]

    def test_count_open_by_tag(self, positions):
        _open(positions, asset="MintAAA111", tag="reserved")
        _open(positions, asset="MintBBB222", tag="normal")
        _open(positions, asset="MintCCC333", tag="normal")

        assert positions.count_open() == 3
        assert positions.count_open("reserved") == 1
        assert positions.count_open("normal") == 2

    def test_daily_stats(self, positions):
        _open(positions, asset="MintAAA111")
        _open(positions, asset="MintBBB222")
        _open(positions, asset="MintCCC333")
        positions.close("MintAAA111", exit_price=1.3e-7, token_amount=1, quote_out=0.065, reason="take_profit")
        positions.close("MintBBB222", exit_price=8e-8, token_amount=1, quote_out=0.04, reason="stop_loss")
        positions.close("MintCCC333", exit_price=9e-8, token_amount=1, quote_out=0.045, reason="stagnation")

        stats = positions.daily_stats()

        assert stats.total_trades == 3
        assert stats.wins == 1
        assert stats.losses == 2
        assert stats.win_rate == pytest.approx(100 / 3)
        assert stats.total_pnl == pytest.approx(0.0)
        assert stats.best_pnl == pytest.approx(0.015)
        assert stats.worst_pnl == pytest.approx(-0.01)
        assert positions.daily_pnl() == pytest.approx(0.0)

    def test_daily_stats_empty_day(self, positions):
        stats = positions.daily_stats("2020-01-01")

        assert stats.total_trades == 0
        assert stats.win_rate == 0.0

    def test_ledger_is_bucketed_by_utc_day(self, positions, clock):
        _open(positions)
        positions.close(ASSET, exit_price=8e-8, token_amount=1, quote_out=0.04, reason="stop_loss")
        first_day = positions.today()
        clock.advance(86_400)

        assert positions.daily_pnl() == 0.0
        assert positions.daily_pnl(first_day) == pytest.approx(-0.01)

    def test_malformed_ledger_entry_skipped(self, positions, kv):
        kv.rpush(LEDGER_KEY.format(day=positions.today()), "not json", json.dumps({"asset": "X"}))

        assert positions.daily_ledger() == []


class TestMaintenance:
    def test_ghosts_found_and_purged(self, positions, kv):
        _open(positions)
        kv.sadd(OPEN_INDEX_KEY, "MintGHOST")

        assert positions.find_ghosts() == ["MintGHOST"]
        assert positions.purge_ghosts() == ["MintGHOST"]
        assert kv.smembers(OPEN_INDEX_KEY) == {ASSET}

    def test_closed_record_left_in_index_is_a_ghost(self, positions, kv):
        _open(positions)
        positions.close(ASSET, exit_price=1e-7, token_amount=1, quote_out=0.05, reason="stagnation")
        kv.sadd(OPEN_INDEX_KEY, ASSET)

        assert positions.find_ghosts() == [ASSET]

    def test_closed_records_deleted_open_kept(self, positions, kv):
        _open(positions, asset="MintAAA111")
        _open(positions, asset="MintBBB222")
        positions.close("MintAAA111", exit_price=1e-7, token_amount=1, quote_out=0.05, reason="stagnation")

        assert positions.delete_closed_records() == ["MintAAA111"]
        assert positions.get("MintAAA111") is None
        assert positions.get("MintBBB222").is_open

    def test_prune_ledger_keeps_retention_window(self, positions, kv):
        for day in ("2025-10-01", "2025-10-05", "2025-10-06", "2025-10-09"):
            kv.rpush(LEDGER_KEY.format(day=day), json.dumps({"asset": "X", "pnl_quote": 0.0}))

        pruned = positions.prune_ledger(retention_days=3, today="2025-10-09")

        assert pruned == ["trades:2025-10-01", "trades:2025-10-05"]
        assert kv.keys("trades:*") == ["trades:2025-10-06", "trades:2025-10-09"]
