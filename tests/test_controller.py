from __future__ import annotations

import threading

import pytest

from app_types import CollectionName
from cache_store import EntityStore, StalenessTracker
from controller import CacheController, CollectionState
from conftest import BlockingFetcher, make_entity

TTL = 180


class FakeFetcher:
    def __init__(self, *batches):
        self.batches = list(batches)
        self.calls: list[bool] = []
        self.error: Exception | None = None

    def __call__(self, force: bool):
        self.calls.append(force)
        if self.error is not None:
            raise self.error
        if len(self.batches) > 1:
            return self.batches.pop(0)
        return self.batches[0]


def _controller(fetcher, clock) -> CacheController:
    return CacheController(
        CollectionName.DOCUMENTS, fetcher, StalenessTracker(clock=clock), TTL
    )


def _ids(controller: CacheController) -> list[str]:
    return [e.id for e in controller.get()]


def test_first_load_populates_and_marks_fresh(clock):
    fetcher = FakeFetcher([make_entity("A"), make_entity("B")])
    controller = _controller(fetcher, clock)

    assert controller.load() is True

    assert _ids(controller) == ["A", "B"]
    assert controller.state == CollectionState.READY
    assert controller.stats()["last_fetch"] == clock.now
    assert controller.is_stale() is False
    assert fetcher.calls == [False]


def test_fresh_collection_is_served_from_cache(clock):
    fetcher = FakeFetcher([make_entity("A"), make_entity("B")])
    controller = _controller(fetcher, clock)
    controller.load()

    clock.advance(60)
    assert controller.load() is False

    assert len(fetcher.calls) == 1
    assert _ids(controller) == ["A", "B"]


def test_force_bypasses_freshness(clock):
    fetcher = FakeFetcher([make_entity("A"), make_entity("B")], [make_entity("C")])
    controller = _controller(fetcher, clock)
    controller.load()

    clock.advance(60)
    assert controller.load(force=True) is True

    assert fetcher.calls == [False, True]
    assert _ids(controller) == ["C"]


def test_stale_collection_refetches(clock):
    fetcher = FakeFetcher([make_entity("A")], [make_entity("A"), make_entity("B")])
    controller = _controller(fetcher, clock)
    controller.load()

    clock.advance(TTL + 1)
    assert controller.load() is True

    assert _ids(controller) == ["A", "B"]


def test_fresh_but_empty_collection_refetches(clock):
    fetcher = FakeFetcher([])
    controller = _controller(fetcher, clock)
    controller.load()

    controller.load()

    assert len(fetcher.calls) == 2


def test_failure_preserves_cache_and_sets_error(clock):
    fetcher = FakeFetcher([make_entity("A")])
    controller = _controller(fetcher, clock)
    controller.load()
    marked_at = controller.stats()["last_fetch"]

    clock.advance(30)
    fetcher.error = ConnectionError("network down")
    assert controller.load(force=True) is False

    assert _ids(controller) == ["A"]
    assert controller.error == "network down"
    assert controller.state == CollectionState.READY
    assert controller.in_flight is False
    assert controller.stats()["last_fetch"] == marked_at


def test_failure_on_first_load_stays_uninitialized(clock):
    fetcher = FakeFetcher([])
    fetcher.error = RuntimeError("boom")
    controller = _controller(fetcher, clock)

    controller.load()

    assert controller.state == CollectionState.UNINITIALIZED
    assert controller.error == "boom"
    assert controller.is_stale() is True


def test_success_clears_previous_error(clock):
    fetcher = FakeFetcher([make_entity("A")])
    fetcher.error = RuntimeError("boom")
    controller = _controller(fetcher, clock)
    controller.load()

    fetcher.error = None
    controller.load()

    assert controller.error is None
    assert _ids(controller) == ["A"]


def test_concurrent_loads_call_fetcher_once(clock):
    fetcher = BlockingFetcher([make_entity("A")])
    controller = _controller(fetcher, clock)

    worker = threading.Thread(target=controller.load)
    worker.start()
    assert fetcher.started.wait(timeout=5)

    assert controller.in_flight is True
    assert controller.load() is False
    assert controller.load(force=True) is False

    fetcher.release()
    worker.join(timeout=5)

    assert fetcher.calls == 1
    assert _ids(controller) == ["A"]


def test_full_page_loading_only_before_first_success(clock):
    fetcher = BlockingFetcher([make_entity("A")])
    controller = _controller(fetcher, clock)
    seen: list[CollectionState] = []
    controller.subscribe(lambda c: seen.append(c.state))

    worker = threading.Thread(target=controller.load)
    worker.start()
    fetcher.started.wait(timeout=5)
    assert controller.show_full_page_loading is True
    fetcher.release()
    worker.join(timeout=5)

    fetcher.error = RuntimeError("offline")
    controller.load(force=True)

    assert controller.show_full_page_loading is False
    assert seen == [
        CollectionState.LOADING,
        CollectionState.READY,
        CollectionState.REFRESHING,
        CollectionState.READY,
    ]


def test_reset_discards_in_flight_result(clock):
    fetcher = BlockingFetcher([make_entity("A")])
    controller = _controller(fetcher, clock)

    worker = threading.Thread(target=controller.load)
    worker.start()
    fetcher.started.wait(timeout=5)

    controller.reset()
    fetcher.release()
    worker.join(timeout=5)

    assert controller.get() == []
    assert controller.state == CollectionState.UNINITIALIZED
    assert controller.is_stale() is True


def test_reset_discards_in_flight_failure(clock):
    fetcher = BlockingFetcher([])
    fetcher.error = RuntimeError("late failure")
    controller = _controller(fetcher, clock)

    worker = threading.Thread(target=controller.load)
    worker.start()
    fetcher.started.wait(timeout=5)
    controller.reset()
    fetcher.release()
    worker.join(timeout=5)

    assert controller.error is None


def test_background_refresh_only_when_stale(clock):
    fetcher = FakeFetcher([make_entity("A")], [make_entity("A"), make_entity("B")])
    controller = _controller(fetcher, clock)
    controller.load()

    assert controller.refresh_in_background() is None

    clock.advance(TTL + 1)
    worker = controller.refresh_in_background()
    assert worker is not None
    worker.join(timeout=5)

    assert _ids(controller) == ["A", "B"]
    assert controller.show_full_page_loading is False


def test_invalidate_makes_next_load_fetch(clock):
    fetcher = FakeFetcher([make_entity("A")])
    controller = _controller(fetcher, clock)
    controller.load()

    controller.invalidate()
    controller.load()

    assert len(fetcher.calls) == 2


@pytest.mark.parametrize("exc", [ValueError("bad payload"), OSError("socket closed")])
def test_fetch_errors_never_propagate(clock, exc):
    fetcher = FakeFetcher([])
    fetcher.error = exc
    controller = _controller(fetcher, clock)

    controller.load()

    assert controller.error == str(exc)


def test_injected_store_is_used_even_when_empty(clock):
    store = EntityStore()
    controller = CacheController(
        CollectionName.DOCUMENTS,
        FakeFetcher([make_entity("A")]),
        StalenessTracker(clock=clock),
        TTL,
        store=store,
    )

    controller.load()

    assert controller.store is store
    assert [e.id for e in store.get()] == ["A"]


def test_failing_listener_does_not_leave_load_in_flight(clock):
    fetcher = FakeFetcher([make_entity("A")])
    controller = _controller(fetcher, clock)
    raised: list[bool] = []

    def listener(_controller):
        if not raised:
            raised.append(True)
            raise RuntimeError("listener blew up")

    controller.subscribe(listener)

    assert controller.load() is False
    assert controller.in_flight is False
    assert controller.error == "listener blew up"

    assert controller.load() is True
    assert [e.id for e in controller.get()] == ["A"]
