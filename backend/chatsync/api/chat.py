"""Chat API endpoints: conversations, turns, live streams and cascading deletes."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from chatsync.core.exceptions import (
    ConfigurationError,
    ConfirmationRequired,
    ConversationNotFound,
    InvalidImage,
    InvalidMetadata,
    ReadError,
    SubmissionRejected,
    WriteError,
)
from chatsync.core.security import get_display_name, get_owner_id
from chatsync.models.conversation import Category
from chatsync.services.container import Services
from chatsync.services.conversation_registry import ALL_CATEGORIES, derive_view
from chatsync.services.transcript import (
    export_transcript,
    format_relative,
    serialize_conversation,
    serialize_turn,
    with_welcome,
)

router = APIRouter(prefix="/api/chat", tags=["chat"])


def get_services(request: Request) -> Services:
    return request.app.state.services


# --- Schemas ---

class UpdateConversationRequest(BaseModel):
    title: str | None = None
    pinned: bool | None = None
    category: Category | None = None


class SendMessageRequest(BaseModel):
    content: str = ""
    image: str | None = None


class AttachImageRequest(BaseModel):
    image: str


class ClearAllRequest(BaseModel):
    confirm: bool = False
    confirm_again: bool = False


# --- Helpers ---

def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ConversationNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SubmissionRejected):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InvalidMetadata, InvalidImage)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, ConfirmationRequired):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


_SERVICE_ERRORS = (
    ConversationNotFound,
    SubmissionRejected,
    InvalidMetadata,
    InvalidImage,
    ConfirmationRequired,
    ConfigurationError,
    WriteError,
    ReadError,
)


async def _owned(services: Services, conversation_id: str, owner_id: str):
    try:
        return await services.registry.get(conversation_id, owner_id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e)


def _serialize_listed(conv) -> dict:
    data = serialize_conversation(conv)
    data["updated_label"] = format_relative(conv.updated_at)
    return data


async def _event_stream(
    subscribe: Callable[..., Callable[[], None]],
    key: str,
    serialize: Callable[[Any], Any],
):
    """Relay live snapshots as SSE events until the client leaves or the stream ends.

    A slow client only ever gets the newest pending snapshot; older ones are dropped.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def offer(item: Any) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(item)

    unsubscribe = subscribe(key, offer, offer)
    try:
        while True:
            item = await queue.get()
            if isinstance(item, Exception):
                event = json.dumps({
                    "type": "error",
                    "content": str(item),
                    "configuration": isinstance(item, ConfigurationError),
                })
                yield f"data: {event}\n\n"
                return
            event = json.dumps({"type": "snapshot", "items": serialize(item)})
            yield f"data: {event}\n\n"
    finally:
        unsubscribe()


_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


# --- Conversation Routes ---

@router.get("/conversations")
async def api_list_conversations(
    search: str = Query("", description="Case-insensitive title filter"),
    category: Category | Literal["all"] = Query(ALL_CATEGORIES, description="all, work, personal, learning, other"),
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    """List conversations, pinned first, then most recently updated."""
    try:
        conversations = await services.registry.list_owned(owner_id)
    except ReadError as e:
        raise _http_error(e)
    return [_serialize_listed(c) for c in derive_view(conversations, search, category)]


@router.post("/conversations")
async def api_create_conversation(
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    try:
        conv = await services.registry.create(owner_id)
    except WriteError as e:
        raise _http_error(e)
    return serialize_conversation(conv)


@router.get("/conversations/{conversation_id}")
async def api_get_conversation(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    conv = await _owned(services, conversation_id, owner_id)
    data = serialize_conversation(conv)
    data["state"] = services.engine.state(conversation_id).value
    return data


@router.patch("/conversations/{conversation_id}")
async def api_update_conversation(
    conversation_id: str,
    body: UpdateConversationRequest,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    """Update title, pin flag or category."""
    await _owned(services, conversation_id, owner_id)
    patch = body.model_dump(exclude_none=True)
    if "category" in patch:
        patch["category"] = patch["category"].value
    try:
        conv = await services.registry.update_metadata(conversation_id, **patch)
    except _SERVICE_ERRORS as e:
        raise _http_error(e)
    return serialize_conversation(conv)


@router.post("/conversations/{conversation_id}/pin")
async def api_toggle_pin(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await _owned(services, conversation_id, owner_id)
    try:
        conv = await services.registry.toggle_pinned(conversation_id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e)
    return serialize_conversation(conv)


@router.delete("/conversations/{conversation_id}")
async def api_delete_conversation(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    """Delete a conversation and all of its turns.

    If this was the conversation on screen, the client creates a replacement.
    """
    await _owned(services, conversation_id, owner_id)
    try:
        report = await services.deletion.delete_conversation(conversation_id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e)
    return {"deleted": True, "id": conversation_id, **report.as_dict()}


@router.post("/conversations/clear")
async def api_clear_conversations(
    body: ClearAllRequest,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    """Delete every conversation of the caller. Needs both confirmation flags."""
    confirmations = int(body.confirm) + int(body.confirm and body.confirm_again)
    try:
        report = await services.deletion.clear_all(owner_id, confirmations=confirmations)
    except _SERVICE_ERRORS as e:
        raise _http_error(e)
    return report.as_dict()


# --- Message Routes ---

@router.get("/conversations/{conversation_id}/messages")
async def api_get_messages(
    conversation_id: str,
    include_welcome: bool = Query(False),
    owner_id: str = Depends(get_owner_id),
    display_name: str = Depends(get_display_name),
    services: Services = Depends(get_services),
):
    await _owned(services, conversation_id, owner_id)
    try:
        turns = [serialize_turn(t) for t in await services.message_log.list_turns(conversation_id)]
    except ReadError as e:
        raise _http_error(e)
    return with_welcome(turns, display_name) if include_welcome else turns


@router.post("/conversations/{conversation_id}/messages")
async def api_send_message(
    conversation_id: str,
    body: SendMessageRequest,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    """Send a user turn and wait for the assistant turn.

    Completion failures come back as a persisted error turn (``is_error``),
    not as an HTTP error.
    """
    await _owned(services, conversation_id, owner_id)
    try:
        result = await services.engine.submit(conversation_id, body.content, image=body.image)
    except _SERVICE_ERRORS as e:
        raise _http_error(e)
    return {
        "user_turn_id": result.user_turn_id,
        "assistant_turn_id": result.assistant_turn_id,
        "text": result.text,
        "image_url": result.image_url,
        "is_error": result.is_error,
    }


@router.post("/conversations/{conversation_id}/regenerate")
async def api_regenerate(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await _owned(services, conversation_id, owner_id)
    try:
        result = await services.engine.regenerate(conversation_id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e)
    return {
        "user_turn_id": result.user_turn_id,
        "assistant_turn_id": result.assistant_turn_id,
        "text": result.text,
        "image_url": result.image_url,
        "is_error": result.is_error,
    }


@router.put("/conversations/{conversation_id}/image")
async def api_attach_image(
    conversation_id: str,
    body: AttachImageRequest,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    """Stage an image for the next submission."""
    await _owned(services, conversation_id, owner_id)
    try:
        services.engine.attach_image(conversation_id, body.image)
    except InvalidImage as e:
        raise _http_error(e)
    return {"attached": True}


@router.delete("/conversations/{conversation_id}/image")
async def api_clear_image(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await _owned(services, conversation_id, owner_id)
    services.engine.clear_image(conversation_id)
    return {"attached": False}


@router.get("/conversations/{conversation_id}/export")
async def api_export_conversation(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await _owned(services, conversation_id, owner_id)
    try:
        turns = [serialize_turn(t) for t in await services.message_log.list_turns(conversation_id)]
    except ReadError as e:
        raise _http_error(e)
    filename = f"chat-{datetime.now(timezone.utc).date().isoformat()}.txt"
    return PlainTextResponse(
        export_transcript(turns),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# --- Live Streams (SSE) ---

@router.get("/conversations/{conversation_id}/stream")
async def api_stream_messages(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await _owned(services, conversation_id, owner_id)
    return StreamingResponse(
        _event_stream(
            services.message_log.subscribe,
            conversation_id,
            lambda turns: [serialize_turn(t) for t in turns],
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/stream")
async def api_stream_conversations(
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    return StreamingResponse(
        _event_stream(
            services.registry.subscribe,
            owner_id,
            lambda conversations: [_serialize_listed(c) for c in conversations],
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )
