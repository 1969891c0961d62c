"""
controller.py
-------------
Per-collection cache controller: the only component that decides whether to
call the fetcher.

Load policy:
- a load already in flight → return (at most one outstanding fetch)
- not forced, fresh and non-empty → serve cached
- otherwise fetch; success replaces the whole collection, failure keeps it

View state is an explicit state machine:

    UNINITIALIZED → LOADING → READY
    READY → REFRESHING → READY (error set on failure)

so the presentation layer shows a full-page spinner exactly when
state == LOADING.
"""
from __future__ import annotations
import logging
import threading
from enum import Enum
from threading import RLock
from typing import Callable, List, Optional, Sequence

from app_types import CollectionName
from cache_store import Entity, EntityStore, StalenessTracker

logger = logging.getLogger("uvicorn.error")

# A fetcher receives the force flag and returns the full ordered collection.
Fetcher = Callable[[bool], Sequence[Entity]]
Listener = Callable[["CacheController"], None]


class CollectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    REFRESHING = "refreshing"


class CacheController:
    def __init__(
        self,
        name: CollectionName,
        fetcher: Fetcher,
        tracker: StalenessTracker,
        ttl_seconds: float,
        store: Optional[EntityStore] = None,
    ) -> None:
        self.name = name
        self.ttl = ttl_seconds
        self._fetcher = fetcher
        self._tracker = tracker
        self._store = store if store is not None else EntityStore()
        self._lock = RLock()
        self._state = CollectionState.UNINITIALIZED
        self._in_flight = False
        self._has_loaded = False
        self._error: Optional[str] = None
        # Bumped by reset(); a fetch that started under an older epoch is discarded.
        self._epoch = 0
        self._fetch_count = 0
        self._listeners: List[Listener] = []

    # ---------------------------------------------------------------
    # Read side
    # ---------------------------------------------------------------
    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def state(self) -> CollectionState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def has_loaded(self) -> bool:
        return self._has_loaded

    @property
    def show_full_page_loading(self) -> bool:
        return self._state == CollectionState.LOADING

    def get(self) -> List[Entity]:
        return self._store.get()

    def is_stale(self) -> bool:
        return self._tracker.is_stale(self.name.value, self.ttl)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # ---------------------------------------------------------------
    # Load
    # ---------------------------------------------------------------
    def load(self, force: bool = False) -> bool:
        """
        Load the collection according to the policy above.

        Returns True when this call ran the fetcher and applied its result,
        False when it was deduplicated, served from cache, failed, or was
        discarded because the cache was reset meanwhile. Fetcher errors are
        never raised; they end up in `error`.
        """
        name = self.name.value
        with self._lock:
            if self._in_flight:
                logger.info("LOAD SKIPPED → %s (already in flight)", name)
                return False
            if not force and not self.is_stale() and not self._store.is_empty():
                logger.info("CACHE HIT → %s (%s items)", name, len(self._store))
                return False

            self._in_flight = True
            first = not self._has_loaded and self._store.is_empty()
            self._state = CollectionState.LOADING if first else CollectionState.REFRESHING
            epoch = self._epoch
            self._fetch_count += 1

        logger.info(
            "CACHE MISS → %s force=%s mode=%s",
            name, force, "first" if first else "background",
        )
        try:
            # Inside the try so a failing listener cannot leave the load in flight.
            self.notify()
            entities = list(self._fetcher(force))
        except Exception as e:
            return self._finish_failure(epoch, e)
        return self._finish_success(epoch, entities)

    def _finish_success(self, epoch: int, entities: List[Entity]) -> bool:
        name = self.name.value
        with self._lock:
            if epoch != self._epoch:
                logger.info("FETCH DISCARDED → %s (cache reset while in flight)", name)
                return False
            self._store.replace_all(entities)
            self._tracker.mark_fresh(name)
            self._in_flight = False
            self._has_loaded = True
            self._error = None
            self._state = CollectionState.READY
        logger.info("FETCH OK → %s items=%s", name, len(entities))
        self.notify()
        return True

    def _finish_failure(self, epoch: int, exc: Exception) -> bool:
        name = self.name.value
        with self._lock:
            if epoch != self._epoch:
                logger.info("FETCH DISCARDED → %s (cache reset while in flight)", name)
                return False
            self._in_flight = False
            self._error = str(exc) or exc.__class__.__name__
            self._state = (
                CollectionState.READY if self._has_loaded else CollectionState.UNINITIALIZED
            )
        logger.warning("FETCH FAILED → %s: %s", name, self._error)
        self.notify()
        return False

    def refresh_in_background(self) -> Optional[threading.Thread]:
        """
        Start a non-blocking load if the collection is stale.
        Cached entities stay visible while it runs.
        """
        if not self.is_stale():
            return None
        logger.info("BACKGROUND REFRESH → %s", self.name.value)
        worker = threading.Thread(
            target=self.load,
            name=f"refresh-{self.name.value}",
            daemon=True,
        )
        worker.start()
        return worker

    def invalidate(self) -> None:
        self._tracker.invalidate(self.name.value)

    def reset(self) -> None:
        """Drop contents, staleness mark, error and any in-flight fetch result."""
        with self._lock:
            self._epoch += 1
            self._store.clear()
            self._tracker.invalidate(self.name.value)
            self._in_flight = False
            self._has_loaded = False
            self._error = None
            self._state = CollectionState.UNINITIALIZED
        logger.info("CACHE RESET → %s", self.name.value)
        self.notify()

    def stats(self) -> dict:
        with self._lock:
            return {
                "name": self.name.value,
                "size": len(self._store),
                "state": self._state.value,
                "in_flight": self._in_flight,
                "error": self._error,
                "ttl_seconds": self.ttl,
                "last_fetch": self._tracker.last_fetch(self.name.value),
                "stale": self.is_stale(),
                "fetches": self._fetch_count,
            }
