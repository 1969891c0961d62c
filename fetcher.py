# fetcher.py
import os
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from dotenv import load_dotenv

from app_types import DocumentType
from cache_store import Entity
from session import AuthSession

# -----------------------------------------------------------
# Environment & logging
# -----------------------------------------------------------
load_dotenv()
logger = logging.getLogger("uvicorn.error")

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000/api/v1").rstrip("/")
API_TOKEN = os.getenv("API_TOKEN")
API_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", "20"))
EMAILS_PAGE_SIZE = int(os.getenv("EMAILS_PAGE_SIZE", "20"))

# List endpoint → (payload key, document_type forced onto every item)
DOCUMENT_SOURCES = (
    ("/documents/", "documents", DocumentType.PDF),
    ("/notes/", "notes", DocumentType.NOTE),
    ("/audio/", "recordings", DocumentType.AUDIO),
)
DELETE_PATHS = {
    DocumentType.PDF: "/documents/{id}",
    DocumentType.NOTE: "/notes/{id}",
    DocumentType.AUDIO: "/audio/{id}",
}


class FetchError(Exception):
    """Network failure, non-success HTTP status or malformed payload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(FetchError):
    pass


# -----------------------------------------------------------
# Helpers
# -----------------------------------------------------------
def _mask_token(token: Optional[str]) -> str:
    if not token:
        return "None"
    return f"{token[:4]}…{token[-4:]}" if len(token) > 8 else "****"


def _error_detail(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return str(body)[:200]


def _expect_list(payload: Any, key: str) -> List[Dict[str, Any]]:
    items = payload.get(key, []) if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise FetchError(f"Malformed payload: expected list under '{key}'")
    return items


def _expect_object(payload: Any, key: str) -> Dict[str, Any]:
    item = payload.get(key) if isinstance(payload, dict) else None
    if not isinstance(item, dict):
        raise FetchError(f"Malformed payload: expected object under '{key}'")
    return item


def _to_entity(payload: Dict[str, Any]) -> Entity:
    try:
        return Entity.from_payload(payload)
    except ValueError as e:
        raise FetchError(f"Malformed payload: {e}") from e


def normalize_document(doc: Dict[str, Any], document_type: Optional[DocumentType] = None) -> Entity:
    """
    Bring documents, notes and audio recordings into one shape.

    Title falls back to the filename, then "Untitled". Processing status falls
    back through OCR and transcription status to "completed".
    """
    doc_type = document_type.value if document_type else doc.get("document_type")
    metadata = doc.get("metadata") or {}
    created_at = doc.get("created_at")
    return _to_entity({
        "id": doc.get("id"),
        "org_id": doc.get("org_id") or "default",
        "user_id": doc.get("user_id"),
        "title": doc.get("title") or doc.get("filename") or "Untitled",
        "document_type": doc_type,
        "filename": doc.get("filename"),
        "file_path": doc.get("file_path"),
        "file_size": doc.get("file_size"),
        "content_type": doc.get("content_type"),
        "content": doc.get("ocr_text") or doc.get("description"),
        "description": doc.get("description"),
        "source_url": doc.get("source_url") or "uploaded",
        "metadata": {
            "speaker": metadata.get("speaker"),
            "date": created_at.split("T")[0] if created_at else None,
            "file_type": doc.get("content_type") or (doc_type or "").upper() or None,
            "language": metadata.get("language") or "en",
            "duration": metadata.get("duration"),
        },
        "processing_status": (
            doc.get("processing_status")
            or doc.get("ocr_status")
            or doc.get("transcription_status")
            or "completed"
        ),
        "created_at": created_at,
        "updated_at": doc.get("updated_at"),
    })


# -----------------------------------------------------------
# Public API
# -----------------------------------------------------------
class ApiClient:
    """
    Thin client for the knowledge-base REST backend.

    The fetch_* methods take the cache's force flag and return the full ordered
    collection; they are passed to CacheController as fetchers. Everything else
    is a single-entity call whose success the caller mirrors into the cache.

    A 401 from any endpoint fires the session's unauthorized event before
    UnauthorizedError is raised.
    """

    def __init__(
        self,
        session: AuthSession,
        base_url: str = API_BASE_URL,
        timeout: float = API_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
    ) -> None:
        self._session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()
        self.upstream_calls = 0  # incremented every time we actually hit the backend

        logger.info(
            "API client → base_url=%s token=%s timeout=%ss",
            self.base_url, _mask_token(session.token), timeout,
        )

    def request(
        self, method: str, path: str, *, params=None, json=None, data=None, files=None, force: bool = False
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {}
        kwargs = {"params": params, "json": json, "timeout": self.timeout}
        if files is not None:
            # requests writes the multipart boundary header itself
            kwargs.update(data=data, files=files)
        else:
            headers["Content-Type"] = "application/json"
        token = self._session.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if force:
            headers["Cache-Control"] = "no-cache"

        logger.info("UPSTREAM CALL → %s %s token=%s", method, path, _mask_token(token))
        try:
            resp = self._http.request(method, url, headers=headers, **kwargs)
        except requests.RequestException as e:
            logger.error("Network error on %s %s: %s", method, path, str(e))
            raise FetchError(f"Network error: {str(e)}") from e

        self.upstream_calls += 1
        logger.info(
            "UPSTREAM CALLED → %s %s status=%s bytes≈%s",
            method, path, resp.status_code, len(resp.content or b""),
        )

        if resp.status_code == 401:
            self._session.unauthorized()
            raise UnauthorizedError("Unauthorized", status_code=401)

        if not 200 <= resp.status_code < 300:
            detail = _error_detail(resp)
            logger.warning("Failed upstream response for %s %s: HTTP %s", method, path, resp.status_code)
            raise FetchError(
                f"Request failed: HTTP {resp.status_code}: {detail}", status_code=resp.status_code
            )

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(f"Malformed payload from {path}: not JSON") from e

    # -------------------------------------------------------
    # Bulk lists (fetchers)
    # -------------------------------------------------------
    def fetch_documents(self, force: bool = False) -> List[Entity]:
        """PDFs, then notes, then audio recordings, as one collection."""
        items: List[Entity] = []
        for path, key, doc_type in DOCUMENT_SOURCES:
            payload = self.request("GET", path, force=force)
            for raw in _expect_list(payload, key):
                if doc_type == DocumentType.PDF and raw.get("document_type") != DocumentType.PDF.value:
                    continue
                items.append(normalize_document(raw, doc_type))
        return items

    def fetch_conversations(self, force: bool = False) -> List[Entity]:
        payload = self.request("GET", "/conversations/", force=force)
        return [_to_entity(raw) for raw in _expect_list(payload, "conversations")]

    def fetch_emails(self, force: bool = False, page: int = 1) -> List[Entity]:
        params = {"limit": EMAILS_PAGE_SIZE, "offset": (page - 1) * EMAILS_PAGE_SIZE}
        payload = self.request("GET", "/gmail/emails", params=params, force=force)
        return [_to_entity(raw) for raw in _expect_list(payload, "emails")]

    def check_gmail_connection(self) -> Dict[str, Any]:
        payload = self.request("GET", "/gmail/status")
        if not isinstance(payload, dict):
            raise FetchError("Malformed payload: expected object from /gmail/status")
        return {
            "connected": bool(payload.get("connected")),
            "email_address": payload.get("email_address"),
        }

    # -------------------------------------------------------
    # Single-entity writes
    # -------------------------------------------------------
    def create_note(self, title: str, description: str) -> Entity:
        payload = self.request("POST", "/notes/", json={"title": title, "description": description})
        return normalize_document(_expect_object(payload, "note"), DocumentType.NOTE)

    def update_note(self, note_id: str, title: str, description: str) -> Entity:
        payload = self.request(
            "PUT", f"/notes/{note_id}", json={"title": title, "description": description}
        )
        return normalize_document(_expect_object(payload, "note"), DocumentType.NOTE)

    def delete_document(self, document_type: DocumentType, document_id: str) -> None:
        self.request("DELETE", DELETE_PATHS[document_type].format(id=document_id))

    def create_conversation(self, title: Optional[str] = None) -> Entity:
        body = {"title": title} if title else {}
        payload = self.request("POST", "/conversations/", json=body)
        return _to_entity(_expect_object(payload, "conversation"))

    def rename_conversation(self, conversation_id: str, title: str) -> Entity:
        payload = self.request("PUT", f"/conversations/{conversation_id}", json={"title": title})
        return _to_entity(_expect_object(payload, "conversation"))

    def delete_conversation(self, conversation_id: str) -> None:
        self.request("DELETE", f"/conversations/{conversation_id}")

    def toggle_star(self, email_id: str) -> bool:
        payload = self.request("POST", f"/gmail/emails/{email_id}/star")
        if not isinstance(payload, dict) or "starred" not in payload:
            raise FetchError("Malformed payload: expected 'starred' from star toggle")
        return bool(payload["starred"])

    def get_email_detail(self, email_id: str) -> Entity:
        """Full email (headers, labels, body); the backend marks it read on open."""
        payload = self.request("GET", f"/gmail/emails/{email_id}")
        if not isinstance(payload, dict):
            raise FetchError("Malformed payload: expected object from email detail")
        return _to_entity(payload)

    def upload_documents(self, files: List[Tuple[str, bytes, str]]) -> List[Entity]:
        """Upload PDFs as one multipart request; `files` holds (filename, content, content_type)."""
        parts = [("files", (filename, content, content_type)) for filename, content, content_type in files]
        payload = self.request("POST", "/documents/upload", files=parts)
        return [normalize_document(raw, DocumentType.PDF) for raw in _expect_list(payload, "documents")]

    def upload_audio(
        self,
        filename: str,
        content: bytes,
        content_type: str,
        title: str,
        description: Optional[str] = None,
        language: str = "en",
    ) -> Entity:
        form = {"title": title, "language": language}
        if description:
            form["description"] = description
        payload = self.request(
            "POST", "/audio/upload", data=form, files={"file": (filename, content, content_type)}
        )
        return normalize_document(_expect_object(payload, "audio"), DocumentType.AUDIO)
