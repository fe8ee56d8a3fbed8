import json
import random
from datetime import datetime

import pytest

from cherry_picker.config import SelectorConfig
from cherry_picker.engine import CherryPicker
from cherry_picker.metrics import MetricsCollector
from cherry_picker.store import MemoryQualityStore

FIXED_NOW = datetime(2024, 3, 1, 14, 30, 0)


class FakeTimer:
    """Monotonic clock the tests can move forward by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FixedRandom(random.Random):
    """Always draws the same index (clamped to the pool)."""

    def __init__(self, index: int = 0):
        super().__init__(0)
        self.index = index
        self.calls = []

    def randrange(self, n, *args, **kwargs):
        self.calls.append(n)
        return min(self.index, n - 1)


def wire(results, average=0.0):
    return json.dumps({
        "results": {str(code): n for code, n in results.items()},
        "averageSuccessLatency": f"{average:.5f}",
    })


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def store(timer):
    return MemoryQualityStore(clock=lambda: FIXED_NOW, timer=timer)


@pytest.fixture
def metrics():
    return MetricsCollector(buffer_size=100)


@pytest.fixture
def picker(store, metrics):
    return CherryPicker(store, SelectorConfig(), metrics=metrics, rng=random.Random(42))
