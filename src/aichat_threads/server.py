"""FastAPI web server for aichat-threads."""

import logging
import uuid
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import get_workspace_root
from .core import COMPLETED, USER, Message, Thread
from .export import EXPORT_FORMATS, safe_filename, thread_to_json, thread_to_markdown
from .producer import EchoReplyProducer, ReplyProducer
from .schemas import CancelRequest, ChatRequest, ThreadCreate, ThreadUpdate, WorkspaceUpdate
from .store import ThreadStore
from .streaming import SSE_HEADERS, SessionRegistry, StreamEvent, StreamingSession
from .validation import FenceRepairValidator, ResponseValidator

logger = logging.getLogger(__name__)

app = FastAPI(title="aichat-threads", version="0.1.0")

# Lazily created on first request; cli.serve or tests may preset them.
_store: ThreadStore | None = None
_producer: ReplyProducer | None = None
_validator: ResponseValidator | None = None
_registry = SessionRegistry()


def configure(
    store: ThreadStore | None = None,
    producer: ReplyProducer | None = None,
    validator: ResponseValidator | None = None,
) -> None:
    """Install the store and collaborators used by the routes."""
    global _store, _producer, _validator
    if store is not None:
        _store = store
    if producer is not None:
        _producer = producer
    if validator is not None:
        _validator = validator


def _get_store() -> ThreadStore:
    global _store
    if _store is None:
        _store = ThreadStore(get_workspace_root())
        logger.info("Using workspace %s", _store.workspace_root)
    return _store


def _get_producer() -> ReplyProducer:
    global _producer
    if _producer is None:
        _producer = EchoReplyProducer()
        logger.info("No reply producer configured, using %s", _producer.name)
    return _producer


def _get_validator() -> ResponseValidator:
    global _validator
    if _validator is None:
        _validator = FenceRepairValidator()
    return _validator


async def _loaded_store() -> ThreadStore:
    store = _get_store()
    await store.load()
    return store


def _require_thread(store: ThreadStore, thread_id: str) -> Thread:
    thread = store.get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
    return thread


async def _sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.to_sse()


@app.exception_handler(OSError)
async def _write_failed(request: Request, exc: OSError):
    logger.error("Failed to persist threads during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Failed to save threads"})


# ── Threads ──────────────────────────────────────────────────────


@app.get("/api/threads")
async def list_threads(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Return thread summaries, most recently updated first."""
    store = await _loaded_store()
    summaries = store.get_thread_list()
    return {
        "total": len(summaries),
        "threads": [s.to_dict() for s in summaries[offset: offset + limit]],
    }


@app.post("/api/threads", status_code=201)
async def create_thread(body: ThreadCreate | None = None):
    store = await _loaded_store()
    thread = await store.create_thread(body.name if body else None)
    return thread.to_dict()


@app.get("/api/threads/recent")
async def get_recent_thread():
    """Return the most recently updated thread, or null when there is none."""
    store = await _loaded_store()
    thread = store.get_most_recent_thread()
    return thread.to_dict() if thread else None


@app.get("/api/threads/{thread_id}")
async def get_thread(thread_id: str):
    store = await _loaded_store()
    return _require_thread(store, thread_id).to_dict()


@app.patch("/api/threads/{thread_id}")
async def update_thread(thread_id: str, body: ThreadUpdate):
    """Rename a thread and/or set its custom prompt (null clears it)."""
    store = await _loaded_store()
    _require_thread(store, thread_id)

    if body.name is not None:
        await store.rename_thread(thread_id, body.name)
    if "custom_prompt" in body.model_fields_set:
        await store.update_thread_prompt(thread_id, body.custom_prompt)
    return store.get_thread(thread_id).to_dict()


@app.delete("/api/threads/{thread_id}")
async def delete_thread(thread_id: str):
    store = await _loaded_store()
    if not await store.delete_thread(thread_id):
        raise HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
    return {"success": True}


@app.post("/api/threads/{thread_id}/clear")
async def clear_thread(thread_id: str):
    store = await _loaded_store()
    if not await store.clear_thread(thread_id):
        raise HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
    return {"success": True}


# ── Messages ─────────────────────────────────────────────────────


@app.get("/api/threads/{thread_id}/messages")
async def get_thread_messages(
    thread_id: str,
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
):
    store = await _loaded_store()
    _require_thread(store, thread_id)

    messages = store.get_thread_messages(thread_id)
    end = offset + limit if limit else None
    return {
        "threadId": thread_id,
        "messages": [m.to_dict() for m in messages[offset:end]],
        "hasMore": end is not None and len(messages) > end,
    }


@app.patch("/api/threads/{thread_id}/messages/{message_id}")
async def update_message(thread_id: str, message_id: str, patch: dict[str, Any] = Body(...)):
    store = await _loaded_store()
    try:
        updated = await store.update_message(thread_id, message_id, patch)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid message update: {e}")
    if not updated:
        raise HTTPException(status_code=404, detail=f"Message not found: {message_id}")
    thread = store.get_thread(thread_id)
    return thread.messages[thread.find_message_index(message_id)].to_dict()


@app.delete("/api/threads/{thread_id}/messages/{message_id}")
async def delete_thread_message(thread_id: str, message_id: str):
    store = await _loaded_store()
    if not await store.delete_message(thread_id, message_id):
        raise HTTPException(status_code=404, detail=f"Message not found: {message_id}")
    return {"success": True}


@app.delete("/api/messages/{message_id}")
async def delete_message_everywhere(message_id: str):
    """Delete a message, and its paired assistant reply, from every thread."""
    store = await _loaded_store()
    result = await store.delete_message_from_all_threads(message_id)
    if not result.deleted_message_ids:
        raise HTTPException(status_code=404, detail=f"Message not found: {message_id}")
    return {
        "success": True,
        "deletedMessageIds": result.deleted_message_ids,
        "affectedThreadIds": result.affected_thread_ids,
    }


# ── Chat ─────────────────────────────────────────────────────────


@app.post("/api/chat/stream")
async def stream_chat(body: ChatRequest):
    """Start an exchange and stream its events as Server-Sent Events."""
    if not body.message and not body.images:
        raise HTTPException(status_code=400, detail="Message or images are required")

    store = await _loaded_store()
    user_message = Message(
        id=body.message_id or f"user-{uuid.uuid4().hex}",
        role=USER,
        content=body.message,
        status=COMPLETED,
        images=body.images or None,
        notes=body.notes or None,
    )
    session = StreamingSession(
        store,
        _get_producer(),
        body.thread_id,
        user_message,
        validator=_get_validator(),
    )
    return StreamingResponse(
        _sse(_registry.run(session)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/api/chat/cancel")
async def cancel_chat(body: CancelRequest):
    """Cancel an in-flight exchange. Independent of the event stream."""
    return {"success": _registry.cancel(body.thread_id, body.message_id)}


# ── Workspace and export ─────────────────────────────────────────


@app.post("/api/workspace")
async def update_workspace(body: WorkspaceUpdate):
    store = _get_store()
    store.update_workspace_root(body.workspace_root)
    return {"workspaceRoot": str(store.workspace_root)}


@app.get("/api/export/{thread_id}")
async def export_thread(
    thread_id: str,
    format: str = Query("md", description="Export format: md or json"),
):
    """Export a thread as Markdown or JSON."""
    if format not in EXPORT_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unknown export format: {format}")

    store = await _loaded_store()
    thread = _require_thread(store, thread_id)
    filename = safe_filename(thread.name)

    if format == "json":
        return Response(
            content=thread_to_json(thread),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}.json"'},
        )
    return Response(
        content=thread_to_markdown(thread),
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{filename}.md"'},
    )
