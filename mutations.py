"""
mutations.py
------------
Optimistic local mutations for a cached collection.

Call these only after the matching create/update/delete request has already
succeeded upstream. Nothing here talks to the network, and nothing reconciles
with later fetches: the next successful load() replaces the collection wholesale.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from app_types import InsertPosition
from cache_store import Entity
from controller import CacheController

logger = logging.getLogger("uvicorn.error")


class MutationBridge:
    def __init__(
        self,
        controller: CacheController,
        default_position: InsertPosition = InsertPosition.APPEND,
    ) -> None:
        self._controller = controller
        self.default_position = default_position

    @property
    def name(self) -> str:
        return self._controller.name.value

    def add(self, entity: Entity, position: Optional[InsertPosition] = None) -> bool:
        added = self._controller.store.add(entity, position or self.default_position)
        if added:
            logger.info("LOCAL ADD → %s id=%s", self.name, entity.id)
            self._controller.notify()
        else:
            logger.debug("LOCAL ADD ignored → %s id=%s already present", self.name, entity.id)
        return added

    def update(self, entity: Entity) -> bool:
        updated = self._controller.store.update(entity)
        if updated:
            logger.info("LOCAL UPDATE → %s id=%s", self.name, entity.id)
            self._controller.notify()
        return updated

    def patch(self, entity_id: str, updates: Dict[str, Any]) -> Optional[Entity]:
        patched = self._controller.store.patch(entity_id, updates)
        if patched is not None:
            logger.info("LOCAL PATCH → %s id=%s fields=%s", self.name, entity_id, sorted(updates))
            self._controller.notify()
        return patched

    def remove(self, entity_id: str) -> bool:
        removed = self._controller.store.remove(entity_id)
        if removed:
            logger.info("LOCAL DELETE → %s id=%s", self.name, entity_id)
            self._controller.notify()
        return removed
