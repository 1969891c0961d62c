"""
cache_store.py
--------------
Thread-safe building blocks for the client-side collection cache.

Features:
- Entity: a server-originated record keyed by a string id
- EntityStore: ordered, id-keyed collection (replace-all / add / update / remove)
- StalenessTracker: last-successful-fetch timestamp per collection name

Intended for a single-process FastAPI app. Every collection lives in memory for
the lifetime of the process (or until logout/reset clears it).
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from collections import OrderedDict
from threading import RLock
from time import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from app_types import InsertPosition


@dataclass(frozen=True)
class Entity:
    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Entity":
        if "id" not in payload or payload["id"] in (None, ""):
            raise ValueError("entity payload has no id")
        attrs = {k: v for k, v in payload.items() if k not in ("id", "created_at", "updated_at")}
        return cls(
            id=str(payload["id"]),
            attributes=attrs,
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def merged(self, updates: Dict[str, Any]) -> "Entity":
        """Return a copy with `updates` merged over the attribute payload."""
        updates = dict(updates)
        updates.pop("id", None)
        created_at = updates.pop("created_at", self.created_at)
        updated_at = updates.pop("updated_at", self.updated_at)
        return replace(
            self,
            attributes={**self.attributes, **updates},
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            **self.attributes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class EntityStore:
    """
    Ordered, id-keyed view of one collection.
    - replace_all(): swaps contents and order in one step
    - add(): prepend/append; no-op if the id already exists
    - update(): replace in place; no-op if the id is absent
    - remove(): drop by id; no-op if absent
    - get(): snapshot list in display order

    Thread-safe via a single RLock.
    """
    def __init__(self) -> None:
        self._items: "OrderedDict[str, Entity]" = OrderedDict()
        self._lock = RLock()
        self._has_content = False

    def replace_all(self, entities: Iterable[Entity]) -> None:
        fresh: "OrderedDict[str, Entity]" = OrderedDict()
        for entity in entities:
            # Later duplicates replace earlier ones but keep the first position
            fresh[entity.id] = entity
        with self._lock:
            self._items = fresh
            self._has_content = True

    def add(self, entity: Entity, position: InsertPosition = InsertPosition.APPEND) -> bool:
        with self._lock:
            if entity.id in self._items:
                return False
            self._items[entity.id] = entity
            if position == InsertPosition.PREPEND:
                self._items.move_to_end(entity.id, last=False)
            return True

    def update(self, entity: Entity) -> bool:
        with self._lock:
            if entity.id not in self._items:
                return False
            self._items[entity.id] = entity
            return True

    def patch(self, entity_id: str, updates: Dict[str, Any]) -> Optional[Entity]:
        """Merge partial attribute updates into an existing entity, in place."""
        with self._lock:
            current = self._items.get(entity_id)
            if current is None:
                return None
            patched = current.merged(updates)
            self._items[entity_id] = patched
            return patched

    def remove(self, entity_id: str) -> bool:
        with self._lock:
            return self._items.pop(entity_id, None) is not None

    def find(self, entity_id: str) -> Optional[Entity]:
        with self._lock:
            return self._items.get(entity_id)

    def get(self) -> List[Entity]:
        with self._lock:
            return list(self._items.values())

    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    @property
    def has_content(self) -> bool:
        """True once replace_all() has run at least once since the last clear()."""
        return self._has_content

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items = OrderedDict()
            self._has_content = False


class StalenessTracker:
    """
    Last-fetch timestamps keyed by collection name.
    A name that was never marked (or was invalidated) is always stale.
    """
    def __init__(self, clock: Callable[[], float] = time) -> None:
        self._clock = clock
        self._marks: Dict[str, float] = {}
        self._lock = RLock()

    def _now(self) -> float:
        return self._clock()

    def mark_fresh(self, name: str) -> float:
        with self._lock:
            stamp = self._now()
            self._marks[name] = stamp
            return stamp

    def is_stale(self, name: str, ttl: float) -> bool:
        with self._lock:
            mark = self._marks.get(name)
            if mark is None:
                return True
            return self._now() - mark > ttl

    def last_fetch(self, name: str) -> Optional[float]:
        with self._lock:
            return self._marks.get(name)

    def invalidate(self, name: str) -> None:
        with self._lock:
            self._marks.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._marks.clear()

    def stats(self) -> dict:
        with self._lock:
            return {"last_fetch": dict(self._marks)}
