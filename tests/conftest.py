"""
pytest configuration for ShardFetch tests.

Adds the bin directory to the Python path so the crawler modules import the
same way they do when run as scripts.
"""

import sys
from pathlib import Path

import pytest

bin_dir = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(bin_dir))


class FakeClock:
    """Monotonic clock stand-in that returns queued readings."""

    def __init__(self, *readings: float):
        self._readings = list(readings)
        self.calls = 0

    def __call__(self) -> float:
        self.calls += 1
        return self._readings.pop(0)


@pytest.fixture
def fake_clock():
    return FakeClock
