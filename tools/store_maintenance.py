#!/usr/bin/env python3
"""
Shared store cleanup.

Reports (and with --execute removes):
- ghost entries in the open-position index
- closed position records
- trade ledger days older than the retention window

Usage:
    python -m tools.store_maintenance --config-dir config
    python -m tools.store_maintenance --execute --retention-days 3
"""
import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from core.exceptions import ConfigurationError
from core.position_store import PositionStore
from infra.kv_store import create_kv_store_from_config
from tools.config_validator import load_configs

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    ghosts: List[str] = field(default_factory=list)
    closed_records: List[str] = field(default_factory=list)
    expired_ledger_days: List[str] = field(default_factory=list)
    executed: bool = False

    @property
    def total(self) -> int:
        return len(self.ghosts) + len(self.closed_records) + len(self.expired_ledger_days)


def run_maintenance(
    positions: PositionStore,
    retention_days: int = 3,
    execute: bool = False,
    today: Optional[str] = None,
) -> MaintenanceReport:
    if not execute:
        return MaintenanceReport(
            ghosts=positions.find_ghosts(),
            closed_records=positions.find_closed_records(),
            expired_ledger_days=positions.find_expired_ledger_days(retention_days, today),
        )

    # ghosts first so a closed record still in the index is not left dangling
    return MaintenanceReport(
        ghosts=positions.purge_ghosts(),
        closed_records=positions.delete_closed_records(),
        expired_ledger_days=positions.prune_ledger(retention_days, today),
        executed=True,
    )


def format_report(report: MaintenanceReport, retention_days: int) -> str:
    verb = "Removed" if report.executed else "Would remove"
    lines = [
        "=" * 60,
        "STORE MAINTENANCE" + ("" if report.executed else " (report only)"),
        "=" * 60,
        f"{verb} {len(report.ghosts)} ghost open-index entries",
    ]
    lines.extend(f"  - {asset}" for asset in report.ghosts)
    lines.append(f"{verb} {len(report.closed_records)} closed position records")
    lines.extend(f"  - {asset}" for asset in report.closed_records)
    lines.append(f"{verb} {len(report.expired_ledger_days)} ledger days older than {retention_days} days")
    lines.extend(f"  - {key}" for key in report.expired_ledger_days)
    if not report.executed and report.total:
        lines.append("Re-run with --execute to apply.")
    lines.append("=" * 60)
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Clean up the shared position store")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--execute", action="store_true", help="Apply removals (default: report only)")
    parser.add_argument("--retention-days", type=int, default=None, help="Ledger days to keep (default: maintenance.ledger_retention_days)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        app, policy = load_configs(args.config_dir)
    except ConfigurationError as e:
        logger.error("%s", e)
        return 2

    retention_days = args.retention_days
    if retention_days is None:
        retention_days = int((policy.get("maintenance") or {}).get("ledger_retention_days", 3))
    if retention_days < 1:
        logger.error("--retention-days must be >= 1")
        return 2

    store = create_kv_store_from_config(app.get("store"))
    try:
        report = run_maintenance(PositionStore(store), retention_days=retention_days, execute=args.execute)
    finally:
        store.close()

    print(format_report(report, retention_days))
    return 0


if __name__ == "__main__":
    sys.exit(main())
