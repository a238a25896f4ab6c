import os
import sys

import pytest


TESTS_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(TESTS_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from socketmetrics.engine import PollingEndpoint, SummaryRecord, Tick  # noqa: E402

from fakes import FakePollTransport, FakePushTransport, FakeStore  # noqa: E402


BASE_MS = 1_700_000_000_000


@pytest.fixture
def make_tick():
    """Factory for ticks with sensible defaults."""

    def _make(price=100.0, volume=1.0, timestamp_ms=BASE_MS, symbol="BTCUSDT", source_id="WebSocket", sequence_id=None):
        return Tick(
            symbol=symbol,
            price=price,
            volume=volume,
            timestamp_ms=timestamp_ms,
            source_id=source_id,
            sequence_id=sequence_id,
        )

    return _make


@pytest.fixture
def make_record():
    """Factory for summary records."""

    def _make(timestamp_ms=BASE_MS, price=100.0, symbol="BTCUSDT"):
        return SummaryRecord(
            symbol=symbol,
            mean_price=price,
            total_volume=2.5,
            moving_average=price,
            timestamp_ms=timestamp_ms,
            sample_count=3,
            source_id="WebSocket",
        )

    return _make


@pytest.fixture
def endpoints():
    """Two polling endpoints with simple flat price keys."""
    return [
        PollingEndpoint(name="Primary", url="http://primary.test/price", price_path=("price",), volume_path=("volume",)),
        PollingEndpoint(name="Secondary", url="http://secondary.test/price", price_path=("USD",)),
    ]


@pytest.fixture
def push_transport():
    return FakePushTransport()


@pytest.fixture
def poll_transport():
    return FakePollTransport()


@pytest.fixture
def store():
    return FakeStore()
