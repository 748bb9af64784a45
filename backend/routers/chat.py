"""
Parley Chat Router - HTTP surface for turns, edits and history

Endpoints:
    POST   /api/chat                                    stream a turn (NDJSON)
    POST   /api/chat/complete                           run a turn, JSON result
    POST   /api/chat/{chat_id}/messages/{message_id}/edit   edit + replay (stream)
    POST   /api/chat/{chat_id}/regenerate               regenerate last reply (stream)
    GET    /api/chat/{chat_id}/messages                 history page
    DELETE /api/chat/{chat_id}/messages                 truncate after a message

The caller is identified by the X-User-Id header.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from config import runtime_config
from errors import ConversationBusyError, ValidationError, success_response
from services.chat_store import get_chat_store

from .chat_orchestration.history import ConversationHistoryController
from .chat_orchestration.service import ChatTurnService
from .chat_orchestration.turn import ModelMessage, Turn
from .chat_streaming import NDJSON_MEDIA_TYPE, SOURCES_HEADER, sources_header_value, stream_turn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat")

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

Content = Union[str, List[Dict[str, Any]]]


class MessageIn(BaseModel):
    role: str = "user"
    content: Optional[Content] = None
    parts: Optional[List[Dict[str, Any]]] = None  # alternative to content


class ChatRequest(BaseModel):
    chatId: str = Field(..., min_length=1)
    messages: List[MessageIn] = Field(..., min_length=1)
    model: Optional[str] = None
    editTargetId: Optional[str] = None


class EditRequest(BaseModel):
    content: Content
    model: Optional[str] = None


class RegenerateRequest(BaseModel):
    model: Optional[str] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Caller identity from the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


_turn_service: Optional[ChatTurnService] = None


async def get_turn_service() -> ChatTurnService:
    global _turn_service
    if _turn_service is None:
        _turn_service = ChatTurnService(await get_chat_store())
    return _turn_service


def get_history_controller(service: ChatTurnService = Depends(get_turn_service)) -> ConversationHistoryController:
    return ConversationHistoryController(service)


def _build_turn(body: ChatRequest, user_id: str, cancel: asyncio.Event) -> Turn:
    messages = [ModelMessage.from_dict(m.model_dump()) for m in body.messages]
    if not any(m.role == "user" for m in messages):
        raise ValidationError("A user message is required", parameter="messages")
    return Turn(
        chat_id=body.chatId,
        user_id=user_id,
        messages=messages,
        model=body.model or runtime_config.default_model,
        step_budget=runtime_config.step_budget,
        cancel=cancel,
        edit_target_id=body.editTargetId,
    )


def _ensure_idle(service: ChatTurnService, chat_id: str) -> None:
    """Reject before streaming starts so the client gets a 409, not a 200 with an error frame."""
    if service.guard.busy(chat_id):
        raise ConversationBusyError("A reply is still being generated for this chat", chat_id=chat_id)


def _streaming(request: Request, run) -> StreamingResponse:
    return StreamingResponse(
        stream_turn(request, run, runtime_config.disconnect_poll_interval),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("")
async def chat(
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    service: ChatTurnService = Depends(get_turn_service),
):
    """Stream one turn as NDJSON frames."""
    _ensure_idle(service, body.chatId)
    # Validate before the stream opens
    _build_turn(body, user_id, asyncio.Event())

    async def run(emit, cancel):
        return await service.submit(_build_turn(body, user_id, cancel), emit)

    return _streaming(request, run)


@router.post("/complete")
async def chat_complete(
    body: ChatRequest,
    user_id: str = Depends(get_user_id),
    service: ChatTurnService = Depends(get_turn_service),
):
    """Run one turn to completion and return the result as JSON."""
    outcome = await service.submit(_build_turn(body, user_id, asyncio.Event()))
    headers = {}
    header_value = sources_header_value(outcome.sources)
    if header_value:
        headers[SOURCES_HEADER] = header_value
    return JSONResponse(success_response(outcome.to_dict()), headers=headers)


@router.post("/{chat_id}/messages/{message_id}/edit")
async def edit_message(
    chat_id: str,
    message_id: str,
    body: EditRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    controller: ConversationHistoryController = Depends(get_history_controller),
):
    """Replace a user message and stream the replayed turn."""
    _ensure_idle(controller.service, chat_id)

    async def run(emit, cancel):
        return await controller.edit(chat_id, user_id, message_id, body.content, body.model, emit=emit, cancel=cancel)

    return _streaming(request, run)


@router.post("/{chat_id}/regenerate")
async def regenerate(
    chat_id: str,
    request: Request,
    body: Optional[RegenerateRequest] = None,
    user_id: str = Depends(get_user_id),
    controller: ConversationHistoryController = Depends(get_history_controller),
):
    """Drop the last reply and stream a new one."""
    _ensure_idle(controller.service, chat_id)
    model = body.model if body else None

    async def run(emit, cancel):
        return await controller.regenerate(chat_id, user_id, model, emit=emit, cancel=cancel)

    return _streaming(request, run)


@router.get("/{chat_id}/messages")
async def list_messages(
    chat_id: str,
    limit: int = Query(50, ge=1, le=500),
    before: Optional[datetime] = None,
    user_id: str = Depends(get_user_id),
    service: ChatTurnService = Depends(get_turn_service),
):
    messages = await service.store.get_messages(chat_id, user_id, limit=limit, before=before)
    return success_response(messages=[m.to_dict() for m in messages], count=len(messages))


@router.delete("/{chat_id}/messages")
async def delete_messages_after(
    chat_id: str,
    afterMessageId: str = Query(..., min_length=1),
    user_id: str = Depends(get_user_id),
    service: ChatTurnService = Depends(get_turn_service),
):
    """Delete every message after afterMessageId."""
    _ensure_idle(service, chat_id)
    deleted = await service.store.delete_messages_after(chat_id, user_id, afterMessageId)
    logger.info(f"Chat {chat_id}: deleted {deleted} messages after {afterMessageId}")
    return success_response(deletedCount=deleted)
