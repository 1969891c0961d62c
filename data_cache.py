"""
data_cache.py
-------------
The application's cached collections (documents, conversations, emails) and
the statistics derived from them.

One DataCache instance owns one StalenessTracker, one CacheController and one
MutationBridge per collection. It is constructed with injected fetchers so it
can be wired to the REST client in production and to fakes in tests.
"""
from __future__ import annotations
import os
import logging
import threading
from dataclasses import dataclass, asdict
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from dotenv import load_dotenv

from app_types import CollectionName, DocumentType, InsertPosition
from cache_store import Entity, StalenessTracker
from controller import CacheController, Fetcher
from mutations import MutationBridge
from session import AuthSession

load_dotenv()
logger = logging.getLogger("uvicorn.error")

# One TTL for every collection (3 minutes by default)
CACHE_TTL_SECONDS = float(os.getenv("CACHE_TTL_SECONDS", "180"))
GMAIL_STATUS_TTL_SECONDS = float(os.getenv("GMAIL_STATUS_TTL_SECONDS", "300"))
GMAIL_STATUS_KEY = "gmail_status"

# New documents go to the end, new conversations and emails to the top.
DEFAULT_POSITIONS = {
    CollectionName.DOCUMENTS: InsertPosition.APPEND,
    CollectionName.CONVERSATIONS: InsertPosition.PREPEND,
    CollectionName.EMAILS: InsertPosition.PREPEND,
}


@dataclass(frozen=True)
class DerivedStats:
    total_documents: int = 0
    total_notes: int = 0
    total_audio: int = 0
    total_items: int = 0
    total_conversations: int = 0
    total_emails: int = 0
    unread_emails: int = 0
    starred_emails: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def compute_stats(
    documents: Sequence[Entity],
    conversations: Sequence[Entity],
    emails: Sequence[Entity],
) -> DerivedStats:
    def count_type(doc_type: DocumentType) -> int:
        return sum(1 for d in documents if d.get("document_type") == doc_type.value)

    return DerivedStats(
        total_documents=count_type(DocumentType.PDF),
        total_notes=count_type(DocumentType.NOTE),
        total_audio=count_type(DocumentType.AUDIO),
        total_items=len(documents),
        total_conversations=len(conversations),
        total_emails=len(emails),
        unread_emails=sum(1 for e in emails if not e.get("is_read", False)),
        starred_emails=sum(1 for e in emails if e.get("is_starred", False)),
    )


class DataCache:
    def __init__(
        self,
        fetchers: Mapping[CollectionName, Fetcher],
        gmail_status: Optional[Callable[[], Dict[str, Any]]] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        gmail_status_ttl_seconds: float = GMAIL_STATUS_TTL_SECONDS,
        tracker: Optional[StalenessTracker] = None,
    ) -> None:
        self.tracker = tracker or StalenessTracker()
        self.ttl = ttl_seconds
        self._gmail_status = gmail_status
        self._gmail_status_ttl = gmail_status_ttl_seconds
        self._gmail_connected = gmail_status is None
        self._gmail_address: Optional[str] = None
        self._lock = RLock()

        self.controllers: Dict[CollectionName, CacheController] = {}
        self.mutations: Dict[CollectionName, MutationBridge] = {}
        for name in CollectionName:
            controller = CacheController(name, fetchers[name], self.tracker, ttl_seconds)
            self.controllers[name] = controller
            self.mutations[name] = MutationBridge(controller, DEFAULT_POSITIONS[name])

    @classmethod
    def from_client(cls, client, session: AuthSession, **kwargs) -> "DataCache":
        """Wire the cache to an ApiClient and reset it whenever the session turns unauthorized."""
        cache = cls(
            fetchers={
                CollectionName.DOCUMENTS: client.fetch_documents,
                CollectionName.CONVERSATIONS: client.fetch_conversations,
                CollectionName.EMAILS: client.fetch_emails,
            },
            gmail_status=client.check_gmail_connection,
            **kwargs,
        )
        session.add_unauthorized_listener(cache.reset)
        return cache

    # -----------------------------------------------------------
    # Derived stats
    # -----------------------------------------------------------
    @property
    def stats(self) -> DerivedStats:
        """Computed from the current snapshots on every read; nothing is kept in between."""
        return compute_stats(
            self.controllers[CollectionName.DOCUMENTS].get(),
            self.controllers[CollectionName.CONVERSATIONS].get(),
            self.controllers[CollectionName.EMAILS].get(),
        )

    # -----------------------------------------------------------
    # Loading
    # -----------------------------------------------------------
    def controller(self, name: CollectionName) -> CacheController:
        return self.controllers[name]

    def bridge(self, name: CollectionName) -> MutationBridge:
        return self.mutations[name]

    def load(self, name: CollectionName, force: bool = False) -> bool:
        if name == CollectionName.EMAILS and not self.gmail_connected:
            logger.info("LOAD SKIPPED → emails (gmail not connected)")
            return False
        return self.controllers[name].load(force=force)

    def refresh_all(self) -> Dict[str, bool]:
        logger.info("REFRESH ALL → forcing every collection")
        self.check_gmail_connection()
        return {name.value: self.load(name, force=True) for name in CollectionName}

    def on_visibility_regained(self) -> List[threading.Thread]:
        """Silently refresh every stale collection without clearing what is displayed."""
        workers = []
        for name, controller in self.controllers.items():
            if name == CollectionName.EMAILS and not self.gmail_connected:
                continue
            worker = controller.refresh_in_background()
            if worker is not None:
                workers.append(worker)
        return workers

    # -----------------------------------------------------------
    # Gmail connection
    # -----------------------------------------------------------
    @property
    def gmail_connected(self) -> bool:
        return self._gmail_connected

    @property
    def gmail_address(self) -> Optional[str]:
        return self._gmail_address

    def check_gmail_connection(self, force: bool = False) -> bool:
        if self._gmail_status is None:
            return self._gmail_connected
        if not force and not self.tracker.is_stale(GMAIL_STATUS_KEY, self._gmail_status_ttl):
            return self._gmail_connected
        try:
            status = self._gmail_status()
        except Exception as e:
            logger.warning("Gmail status check failed: %s", str(e))
            self._gmail_connected = False
            self._gmail_address = None
            return False
        self._gmail_connected = bool(status.get("connected"))
        self._gmail_address = status.get("email_address")
        self.tracker.mark_fresh(GMAIL_STATUS_KEY)
        return self._gmail_connected

    def set_gmail_connection(self, connected: bool, email_address: Optional[str] = None) -> None:
        self._gmail_connected = connected
        self._gmail_address = email_address if connected else None
        self.tracker.mark_fresh(GMAIL_STATUS_KEY)
        if not connected:
            self.controllers[CollectionName.EMAILS].reset()

    # -----------------------------------------------------------
    # Views & lifecycle
    # -----------------------------------------------------------
    def view(self, name: CollectionName) -> Dict[str, Any]:
        controller = self.controllers[name]
        state = controller.state
        return {
            "collection": name.value,
            "state": state.value,
            "show_full_page_loading": controller.show_full_page_loading,
            "busy": controller.in_flight,
            "error": controller.error,
            "stale": controller.is_stale(),
            "items": [e.to_dict() for e in controller.get()],
        }

    def report(self) -> Dict[str, Any]:
        return {
            "collections": {name.value: c.stats() for name, c in self.controllers.items()},
            "derived": self.stats.to_dict(),
            "ttl_seconds": self.ttl,
            "gmail_connected": self._gmail_connected,
        }

    def reset(self) -> None:
        """Clear every collection and staleness record together (logout / 401)."""
        with self._lock:
            for controller in self.controllers.values():
                controller.reset()
            self.tracker.clear()
            if self._gmail_status is not None:
                self._gmail_connected = False
            self._gmail_address = None
        logger.info("Cache cleared")
