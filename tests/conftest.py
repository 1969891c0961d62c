from __future__ import annotations

import threading
from typing import Any

import pytest

from cache_store import Entity

class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

class BlockingFetcher:
    """Holds the fetch open until release() so tests can act while it is in flight."""

    def __init__(self, result):
        self.result = result
        self.calls = 0
        self.started = threading.Event()
        self._release = threading.Event()
        self.error: Exception | None = None

    def __call__(self, force: bool):
        self.calls += 1
        self.started.set()
        self._release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.result

    def release(self) -> None:
        self._release.set()

def make_entity(entity_id: str, **attrs: Any) -> Entity:
    return Entity(
        id=entity_id,
        attributes=attrs,
        created_at="2025-07-18T10:00:00Z",
        updated_at="2025-07-18T10:00:00Z",
    )

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
