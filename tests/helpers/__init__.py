"""Test helpers for the risk monitor test suite"""

from tests.helpers.fakes import (
    START_TIME,
    FakeExecutor,
    FakeLedgerReader,
    ManualClock,
)

__all__ = [
    "START_TIME",
    "FakeExecutor",
    "FakeLedgerReader",
    "ManualClock",
]
