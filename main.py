import os
from typing import Any
from dotenv import load_dotenv

from fastapi import FastAPI, status, Body, File, Form, Query, Header, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app_types import CollectionName, DocumentType
from cache_store import Entity
from data_cache import DataCache
from fetcher import API_TOKEN, ApiClient, FetchError, UnauthorizedError
from session import AuthSession

load_dotenv()  # ensure .env is loaded here too

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")
PID = os.getpid()

session = AuthSession(API_TOKEN)
client = ApiClient(session)
data_cache = DataCache.from_client(client, session)

app = FastAPI()


class TokenIn(BaseModel):
    token: str


class NoteIn(BaseModel):
    title: str
    description: str = ""


class ConversationIn(BaseModel):
    title: str | None = None


class GmailStatusIn(BaseModel):
    connected: bool
    email_address: str | None = None


def _auth(x_admin_token: str | None):
    if not ADMIN_TOKEN:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _upstream_error(e: FetchError) -> HTTPException:
    if isinstance(e, UnauthorizedError):
        return HTTPException(status_code=401, detail="Unauthorized")
    if e.status_code == 404:
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


@app.get("/")
def read_root():
    return JSONResponse(
        content={"status": "ok", "message": "Server is healthy"},
        status_code=status.HTTP_200_OK
    )

@app.get("/health")
def health():
    """Lightweight health check."""
    return {
        "status": "ok",
        "service": "kb-cache",
        "authenticated": session.authenticated,
    }

# -----------------------------------------------------------
# Collections
# -----------------------------------------------------------
@app.get("/collections/{name}")
def get_collection(name: CollectionName, force: bool = Query(False)):
    if name == CollectionName.EMAILS:
        data_cache.check_gmail_connection()
    data_cache.load(name, force=force)
    return data_cache.view(name)

@app.post("/collections/{name}/refresh")
def refresh_collection(name: CollectionName):
    data_cache.load(name, force=True)
    return data_cache.view(name)

@app.post("/collections/refresh")
def refresh_all():
    return {"loaded": data_cache.refresh_all(), "stats": data_cache.stats.to_dict()}

@app.get("/stats")
def get_stats():
    return data_cache.stats.to_dict()

@app.post("/visibility")
def visibility_regained():
    """Host came back to the foreground: refresh stale collections in the background."""
    workers = data_cache.on_visibility_regained()
    return {"refreshing": [w.name.removeprefix("refresh-") for w in workers]}

# -----------------------------------------------------------
# Session
# -----------------------------------------------------------
@app.post("/session/token")
def set_token(body: TokenIn):
    session.set_token(body.token)
    return {"ok": True}

@app.post("/session/logout")
def logout():
    session.unauthorized()
    return {"ok": True}

@app.post("/gmail/status")
def set_gmail_status(body: GmailStatusIn):
    data_cache.set_gmail_connection(body.connected, body.email_address)
    return {"connected": data_cache.gmail_connected, "email_address": data_cache.gmail_address}

# -----------------------------------------------------------
# Writes: call upstream first, mirror into the cache on success
# -----------------------------------------------------------
@app.post("/notes", status_code=status.HTTP_201_CREATED)
def create_note(body: NoteIn):
    try:
        note = client.create_note(body.title, body.description)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.DOCUMENTS).add(note)
    return note.to_dict()

@app.put("/notes/{note_id}")
def update_note(note_id: str, body: NoteIn):
    try:
        note = client.update_note(note_id, body.title, body.description)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.DOCUMENTS).update(note)
    return note.to_dict()

@app.delete("/documents/{document_type}/{document_id}")
def delete_document(document_type: DocumentType, document_id: str):
    try:
        client.delete_document(document_type, document_id)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.DOCUMENTS).remove(document_id)
    return {"ok": True}

@app.post("/conversations", status_code=status.HTTP_201_CREATED)
def create_conversation(body: ConversationIn):
    try:
        conversation = client.create_conversation(body.title)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.CONVERSATIONS).add(conversation)
    return conversation.to_dict()

@app.put("/conversations/{conversation_id}")
def rename_conversation(conversation_id: str, body: ConversationIn):
    if not body.title:
        raise HTTPException(status_code=422, detail="title is required")
    try:
        conversation = client.rename_conversation(conversation_id, body.title)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.CONVERSATIONS).update(conversation)
    return conversation.to_dict()

@app.delete("/conversations/{conversation_id}")
def delete_conversation(conversation_id: str):
    try:
        client.delete_conversation(conversation_id)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.CONVERSATIONS).remove(conversation_id)
    return {"ok": True}

@app.post("/emails/{email_id}/star")
def toggle_star(email_id: str):
    try:
        starred = client.toggle_star(email_id)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.EMAILS).patch(email_id, {"is_starred": starred})
    return {"starred": starred}

@app.get("/emails/{email_id}")
def open_email(email_id: str):
    try:
        email = client.get_email_detail(email_id)
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.EMAILS).patch(email_id, {"is_read": True})
    return email.to_dict()

@app.post("/emails/incoming", status_code=status.HTTP_201_CREATED)
def email_received(payload: dict[str, Any] = Body(...)):
    """Push from the backend's Gmail watch: a new email was stored upstream."""
    try:
        email = Entity.from_payload(payload)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    added = data_cache.bridge(CollectionName.EMAILS).add(email)
    return {"added": added}

@app.post("/documents/upload", status_code=status.HTTP_201_CREATED)
def upload_documents(files: list[UploadFile] = File(...)):
    parts = [(f.filename, f.file.read(), f.content_type or "application/pdf") for f in files]
    try:
        documents = client.upload_documents(parts)
    except FetchError as e:
        raise _upstream_error(e)
    bridge = data_cache.bridge(CollectionName.DOCUMENTS)
    for document in documents:
        bridge.add(document)
    return {"total_uploaded": len(documents), "documents": [d.to_dict() for d in documents]}

@app.post("/audio/upload", status_code=status.HTTP_201_CREATED)
def upload_audio(
    file: UploadFile = File(...),
    title: str = Form(...),
    description: str | None = Form(None),
    language: str = Form("en"),
):
    try:
        audio = client.upload_audio(
            file.filename,
            file.file.read(),
            file.content_type or "application/octet-stream",
            title,
            description,
            language,
        )
    except FetchError as e:
        raise _upstream_error(e)
    data_cache.bridge(CollectionName.DOCUMENTS).add(audio)
    return audio.to_dict()

# -----------------------------------------------------------
# Admin
# -----------------------------------------------------------
@app.post("/admin/cache/clear")
def admin_cache_clear(x_admin_token: str | None = Header(default=None)):
    _auth(x_admin_token)
    data_cache.reset()
    client.upstream_calls = 0
    return {"ok": True}

@app.get("/admin/cache/stats")
def admin_cache_stats(x_admin_token: str | None = Header(default=None)):
    _auth(x_admin_token)
    stats = data_cache.report()
    stats["upstream_calls"] = client.upstream_calls
    stats["pid"] = PID
    stats["cache_id"] = id(data_cache)
    return stats
