"""Test fixtures: in-memory store, fake facilitator and payment builders."""

from .fake_facilitator import FakeFacilitator
from .in_memory_storage import InMemoryKeyValueStore, YieldingKeyValueStore
from .payments import FakeClock

__all__ = [
    "FakeClock",
    "FakeFacilitator",
    "InMemoryKeyValueStore",
    "YieldingKeyValueStore",
]
