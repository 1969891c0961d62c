"""Bearer token holder shared by the HTTP client and the cache."""
from __future__ import annotations
import logging
from threading import RLock
from typing import Callable, List, Optional

logger = logging.getLogger("uvicorn.error")


class AuthSession:
    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token
        self._lock = RLock()
        self._on_unauthorized: List[Callable[[], None]] = []

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def authenticated(self) -> bool:
        return bool(self._token)

    def set_token(self, token: Optional[str]) -> None:
        with self._lock:
            self._token = token or None

    def add_unauthorized_listener(self, callback: Callable[[], None]) -> None:
        self._on_unauthorized.append(callback)

    def unauthorized(self) -> None:
        """Drop the token and tell every listener (logout, 401 from upstream)."""
        with self._lock:
            self._token = None
        logger.warning("SESSION UNAUTHORIZED → clearing token and cached collections")
        for callback in list(self._on_unauthorized):
            callback()
