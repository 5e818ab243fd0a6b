"""
Pytest configuration and fixtures for the risk monitor tests.

Every component takes an injected clock, so fixtures share one ManualClock
and nothing in the suite waits on real time.
"""
import pytest

from core.position_store import PositionStore
from core.price_oracle import PriceOracleCache
from core.retry import RetryPolicy
from infra.events import EventDispatcher, RecordingListener
from infra.kv_store import MemoryKeyValueStore
from infra.metrics import MetricsRecorder
from tests.helpers import FakeExecutor, FakeLedgerReader, ManualClock


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def positions(kv, clock):
    return PositionStore(kv, clock=clock)


@pytest.fixture
def reader():
    return FakeLedgerReader()


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def recorder():
    return RecordingListener()


@pytest.fixture
def events(recorder):
    dispatcher = EventDispatcher()
    dispatcher.subscribe(recorder)
    return dispatcher


@pytest.fixture
def oracle(reader, kv, positions, clock, metrics):
    return PriceOracleCache(
        reader,
        store=kv,
        positions=positions,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.5, sleep=clock.sleep, name="ledger_read"),
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def executor():
    return FakeExecutor()
