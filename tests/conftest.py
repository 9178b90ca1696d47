"""
Shared fixtures: deterministic clocks, every key store backend, and a
ready-to-use engine.
"""
import pytest

from activation_engine import ActivationEngine
from config import load_durations
from key_store import InMemoryKeyStore, JsonFileKeyStore, SqlKeyStore

T0 = 1_700_000_000_000
DAY_MS = 86_400_000

DURATIONS = load_durations({
    "1m": 60_000,
    "24h": DAY_MS,
    "7d": 7 * DAY_MS,
})


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


def make_store(backend: str, tmp_path):
    if backend == "memory":
        return InMemoryKeyStore()
    if backend == "json":
        return JsonFileKeyStore(tmp_path / "keys.json")
    if backend == "sql":
        return SqlKeyStore.from_url(f"sqlite:///{tmp_path / 'keys.db'}")
    raise ValueError(backend)


@pytest.fixture(params=["memory", "json", "sql"])
def store(request, tmp_path):
    """Each test using this runs once per backend."""
    return make_store(request.param, tmp_path)


@pytest.fixture()
def memory_store():
    return InMemoryKeyStore()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def engine(store):
    return ActivationEngine(store, DURATIONS)
