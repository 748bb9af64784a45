"""
Parley Chat Streaming - NDJSON frames and the turn stream driver

Frame types (one JSON object per line):
    {"type": "step", "step": n}
    {"type": "text", "delta": "..."}
    {"type": "tool_start", "id": "...", "name": "..."}
    {"type": "tool_end", "id": "...", "name": "...", "success": bool}
    {"type": "error", "message": "..."}
    {"type": "finish", "finishReason": "...", "sources": [...], "messageId": "..."}
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from fastapi import Request

from errors import GENERIC_SERVER_ERROR, ParleyError, http_status_for, log_error

from .chat_orchestration.service import TurnOutcome
from .chat_orchestration.tool_dispatch import Emit
from .chat_orchestration.turn import FinishReason, Source

logger = logging.getLogger(__name__)

SOURCES_HEADER = "X-Chat-Sources"
SOURCES_HEADER_MAX_CHARS = 7000
NDJSON_MEDIA_TYPE = "application/x-ndjson"

# Turns whose stream was closed early; held until they observe the cancel
_detached_turns: Set[asyncio.Task] = set()

TurnRunner = Callable[[Emit, asyncio.Event], Awaitable[TurnOutcome]]


def ndjson(frame: Dict[str, Any]) -> bytes:
    return (json.dumps(frame, default=str) + "\n").encode("utf-8")


def error_frame(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


def finish_frame(outcome: TurnOutcome) -> Dict[str, Any]:
    return {
        "type": "finish",
        "finishReason": outcome.finish_reason.value,
        "sources": [s.to_dict() for s in outcome.sources],
        "messageId": outcome.message_id,
    }


def sources_header_value(sources: List[Source]) -> Optional[str]:
    """JSON for the X-Chat-Sources header, reduced to title + url when too large."""
    if not sources:
        return None
    full = json.dumps([s.to_dict() for s in sources])
    if len(full) <= SOURCES_HEADER_MAX_CHARS:
        return full
    return json.dumps([{"title": s.title, "url": s.url} for s in sources])


def client_message_for(error: ParleyError) -> str:
    """What the end user sees for an error raised mid-stream."""
    if http_status_for(error) >= 500:
        return GENERIC_SERVER_ERROR
    return error.message


async def watch_disconnect(request: Request, cancel: asyncio.Event, interval: float) -> None:
    """Set cancel once the client goes away."""
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling turn")
            cancel.set()
            return
        await asyncio.sleep(interval)


async def stream_turn(request: Request, run: TurnRunner, poll_interval: float) -> AsyncIterator[bytes]:
    """Run a turn in a task and relay its frames as NDJSON.

    Closing the stream early (client disconnect) sets the turn's cancel event;
    the turn then ends as aborted and persists nothing.
    """
    cancel = asyncio.Event()
    queue: asyncio.Queue = asyncio.Queue()

    async def emit(frame: Dict[str, Any]) -> None:
        await queue.put(frame)

    async def drive() -> None:
        try:
            outcome = await run(emit, cancel)
            if outcome.finish_reason == FinishReason.ERROR:
                await queue.put(error_frame(outcome.error_message or GENERIC_SERVER_ERROR))
            await queue.put(finish_frame(outcome))
        except ParleyError as e:
            if http_status_for(e) >= 500:
                log_error(logger, e, context="stream")
            await queue.put(error_frame(client_message_for(e)))
        except Exception as e:
            log_error(logger, e, context="stream")
            await queue.put(error_frame(GENERIC_SERVER_ERROR))
        finally:
            await queue.put(None)

    task = asyncio.create_task(drive())
    watcher = asyncio.create_task(watch_disconnect(request, cancel, poll_interval))
    completed = False
    try:
        while True:
            frame = await queue.get()
            if frame is None:
                completed = True
                break
            yield ndjson(frame)
    finally:
        watcher.cancel()
        if not completed:
            cancel.set()
            _detached_turns.add(task)
            task.add_done_callback(_detached_turns.discard)
