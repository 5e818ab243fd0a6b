#!/usr/bin/env python3
"""Print the closed-trade summary for one UTC day."""
import argparse
import logging
import sys

from core.exceptions import ConfigurationError
from core.models import DailyStats
from core.position_store import PositionStore
from infra.kv_store import create_kv_store_from_config
from tools.config_validator import load_configs

logger = logging.getLogger(__name__)


def format_stats(stats: DailyStats) -> str:
    lines = [
        "=" * 60,
        f"DAILY REPORT {stats.day}",
        "=" * 60,
        f"  Trades:      {stats.total_trades}",
        f"  Wins/Losses: {stats.wins}/{stats.losses}",
        f"  Win rate:    {stats.win_rate:.1f}%",
        f"  Total PnL:   {stats.total_pnl:+.6f}",
        f"  Avg PnL:     {stats.avg_pnl:+.6f}",
    ]
    if stats.total_trades:
        lines.append(f"  Best/Worst:  {stats.best_pnl:+.6f} / {stats.worst_pnl:+.6f}")
    lines.append("=" * 60)
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Daily closed-trade summary")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--day", default=None, help="UTC day as YYYY-MM-DD (default: today)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    try:
        app, _ = load_configs(args.config_dir)
    except ConfigurationError as e:
        logger.error("%s", e)
        return 2

    store = create_kv_store_from_config(app.get("store"))
    try:
        stats = PositionStore(store).daily_stats(args.day)
    finally:
        store.close()

    print(format_stats(stats))
    return 0


if __name__ == "__main__":
    sys.exit(main())
