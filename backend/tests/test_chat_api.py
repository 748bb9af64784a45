"""
HTTP tests for the chat router.

A minimal FastAPI app mounts the router with the Parley exception handlers;
the turn service is swapped for one backed by an in-memory store and a
scripted provider.
"""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import runtime_config
from errors import register_exception_handlers
from routers.chat import get_turn_service, router
from routers.chat_orchestration import ToolCall
from routers.chat_orchestration.service import ChatTurnService
from routers.chat_streaming import SOURCES_HEADER
from services.chat_store import InMemoryChatStore

from helpers import FailingProvider, ScriptedProvider, text_step, tool_step

HEADERS = {"X-User-Id": "user-1"}

SEARCH_RESULT = {
    "success": True,
    "sources_for_citation": [
        {"title": "Rust Book", "url": "https://doc.rust-lang.org/book/", "snippet": "The Rust Programming Language"}
    ],
}


class Harness:
    """App + client + the pieces tests poke at."""

    def __init__(self):
        self.store = InMemoryChatStore()
        self.providers = []
        self.service = ChatTurnService(self.store, memory=MagicMock(), provider_factory=self._provider)
        app = FastAPI()
        register_exception_handlers(app)
        app.include_router(router)
        app.dependency_overrides[get_turn_service] = lambda: self.service
        self.client = TestClient(app)

    def _provider(self, model, chat_id):
        return self.providers.pop(0)

    def script(self, *steps, model="gpt-4.1"):
        provider = ScriptedProvider(list(steps), model=model)
        self.providers.append(provider)
        return provider

    def seed(self):
        """[U1, A1, U2, A2] for chat c1."""
        run = asyncio.run
        return (
            run(self.store.save_user_message("c1", "user-1", "Is Rust memory safe?")),
            run(self.store.save_assistant_message("c1", "user-1", "Yes, via ownership.")),
            run(self.store.save_user_message("c1", "user-1", "What about unsafe blocks?")),
            run(self.store.save_assistant_message("c1", "user-1", "They opt out locally.")),
        )


def _frames(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


@pytest.fixture
def harness():
    return Harness()


class TestAuthAndValidation:
    """Request checks that happen before a turn starts."""

    def test_missing_user_header(self, harness):
        response = harness.client.post("/api/chat", json={"chatId": "c1", "messages": [{"content": "hi"}]})
        assert response.status_code == 401

    def test_empty_messages_rejected(self, harness):
        response = harness.client.post("/api/chat", json={"chatId": "c1", "messages": []}, headers=HEADERS)
        assert response.status_code == 422

    def test_no_user_message(self, harness):
        response = harness.client.post(
            "/api/chat",
            json={"chatId": "c1", "messages": [{"role": "assistant", "content": "hello"}]},
            headers=HEADERS,
        )
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "VALIDATION_MISSING_PARAM"

    def test_busy_chat_gets_409(self, harness):
        harness.service.guard._in_flight.add("c1")
        response = harness.client.post(
            "/api/chat", json={"chatId": "c1", "messages": [{"content": "hi"}]}, headers=HEADERS
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONVERSATION_BUSY"


class TestStreamingChat:
    """POST /api/chat."""

    def test_streams_frames(self, harness):
        harness.script(
            tool_step(ToolCall(id="call_1", name="web_search", arguments={"query": "rust book"})),
            text_step("Read the Rust Book."),
        )

        async def fake_search(query, num_results=5):
            return SEARCH_RESULT

        with patch("tools.web_search.search_web", fake_search):
            response = harness.client.post(
                "/api/chat",
                json={"chatId": "c1", "messages": [{"role": "user", "content": "How do I learn Rust?"}]},
                headers=HEADERS,
            )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        frames = _frames(response)
        types = [f["type"] for f in frames]
        assert types[0] == "step"
        assert "tool_start" in types
        assert "tool_end" in types
        assert types[-1] == "finish"

        text = "".join(f["delta"] for f in frames if f["type"] == "text")
        assert text == "Read the Rust Book."
        finish = frames[-1]
        assert finish["finishReason"] == "stop"
        assert finish["sources"][0]["url"] == "https://doc.rust-lang.org/book/"
        assert finish["messageId"]

        stored = asyncio.run(harness.store.get_messages("c1", "user-1"))
        assert [m.role for m in stored] == ["user", "assistant"]

    def test_parts_payload(self, harness):
        provider = harness.script(text_step("Got it."))
        response = harness.client.post(
            "/api/chat",
            json={"chatId": "c1", "messages": [{"role": "user", "parts": [{"type": "text", "text": "from parts"}]}]},
            headers=HEADERS,
        )
        assert _frames(response)[-1]["finishReason"] == "stop"
        assert provider.calls[0][-1].text == "from parts"

    def test_provider_error_frame(self, harness):
        harness.providers.append(FailingProvider(ConnectionError("upstream reset")))
        response = harness.client.post(
            "/api/chat", json={"chatId": "c1", "messages": [{"content": "hi"}]}, headers=HEADERS
        )

        frames = _frames(response)
        assert frames[-2]["type"] == "error"
        assert "upstream reset" not in frames[-2]["message"]
        assert frames[-1] == {"type": "finish", "finishReason": "error", "sources": [], "messageId": None}

    def test_step_limit_finish(self, harness):
        runtime_config.step_budget = 1
        harness.script(tool_step(ToolCall(id="a", name="web_scraper", arguments={"url": "ftp://x"})))

        response = harness.client.post(
            "/api/chat", json={"chatId": "c1", "messages": [{"content": "dig deep"}]}, headers=HEADERS
        )

        assert _frames(response)[-1]["finishReason"] == "step-limit"
        stored = asyncio.run(harness.store.get_messages("c1", "user-1"))
        assert "processing limit" in stored[-1].content


class TestCompleteEndpoint:
    """POST /api/chat/complete."""

    def test_json_result_with_sources_header(self, harness):
        harness.script(
            tool_step(ToolCall(id="call_1", name="web_search", arguments={"query": "rust"})),
            text_step("See the book."),
        )

        async def fake_search(query, num_results=5):
            return SEARCH_RESULT

        with patch("tools.web_search.search_web", fake_search):
            response = harness.client.post(
                "/api/chat/complete",
                json={"chatId": "c2", "messages": [{"content": "Rust docs?"}]},
                headers=HEADERS,
            )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["finishReason"] == "stop"
        assert body["text"] == "See the book."
        assert body["toolsUsed"] == ["web_search"]
        assert json.loads(response.headers[SOURCES_HEADER])[0]["title"] == "Rust Book"

    def test_no_sources_no_header(self, harness):
        harness.script(text_step("Plain answer."))
        response = harness.client.post(
            "/api/chat/complete", json={"chatId": "c2", "messages": [{"content": "hi"}]}, headers=HEADERS
        )
        assert SOURCES_HEADER not in response.headers


class TestHistoryEndpoints:
    """Edit, regenerate, list and delete."""

    def test_list_messages(self, harness):
        harness.seed()
        response = harness.client.get("/api/chat/c1/messages", params={"limit": 3}, headers=HEADERS)

        body = response.json()
        assert body["count"] == 3
        assert [m["role"] for m in body["messages"]] == ["assistant", "user", "assistant"]

    def test_list_scoped_to_user(self, harness):
        harness.seed()
        response = harness.client.get("/api/chat/c1/messages", headers={"X-User-Id": "someone-else"})
        assert response.json()["count"] == 0

    def test_edit(self, harness):
        u1, a1, u2, a2 = harness.seed()
        harness.script(text_step("Rust has no garbage collector."))

        response = harness.client.post(
            f"/api/chat/c1/messages/{u1.id}/edit", json={"content": "Does Rust have a GC?"}, headers=HEADERS
        )

        assert _frames(response)[-1]["finishReason"] == "stop"
        listed = harness.client.get("/api/chat/c1/messages", headers=HEADERS).json()["messages"]
        assert [m["id"] for m in listed][0] == u1.id
        assert len(listed) == 2
        assert listed[0]["edited"] is True
        assert listed[0]["content"] == "Does Rust have a GC?"

    def test_edit_assistant_message_error_frame(self, harness):
        u1, a1, u2, a2 = harness.seed()
        response = harness.client.post(
            f"/api/chat/c1/messages/{a1.id}/edit", json={"content": "nope"}, headers=HEADERS
        )

        frames = _frames(response)
        assert frames == [{"type": "error", "message": "Only user messages can be edited"}]
        assert len(asyncio.run(harness.store.get_messages("c1", "user-1"))) == 4

    def test_chat_with_edit_target_truncates(self, harness):
        u1, a1, u2, a2 = harness.seed()
        provider = harness.script(text_step("It has no GC, ownership frees memory."))

        response = harness.client.post(
            "/api/chat",
            json={
                "chatId": "c1",
                "messages": [{"role": "user", "content": "Does Rust have a GC?"}],
                "editTargetId": u1.id,
            },
            headers=HEADERS,
        )

        finish = _frames(response)[-1]
        assert finish["finishReason"] == "stop"
        listed = harness.client.get("/api/chat/c1/messages", headers=HEADERS).json()["messages"]
        assert [(m["role"], m["content"]) for m in listed] == [
            ("user", "Does Rust have a GC?"),
            ("assistant", "It has no GC, ownership frees memory."),
        ]
        assert listed[0]["id"] == u1.id
        assert listed[0]["edited"] is True
        assert listed[1]["id"] == finish["messageId"]
        assert finish["messageId"] not in (a1.id, a2.id)
        assert [m.role for m in provider.calls[0]] == ["system", "user"]

    def test_chat_with_assistant_edit_target(self, harness):
        u1, a1, u2, a2 = harness.seed()
        response = harness.client.post(
            "/api/chat",
            json={"chatId": "c1", "messages": [{"content": "nope"}], "editTargetId": a1.id},
            headers=HEADERS,
        )

        assert _frames(response) == [{"type": "error", "message": "Only user messages can be edited"}]
        assert len(asyncio.run(harness.store.get_messages("c1", "user-1"))) == 4

    def test_regenerate(self, harness):
        u1, a1, u2, a2 = harness.seed()
        harness.script(text_step("Unsafe only relaxes a few checks."))

        response = harness.client.post("/api/chat/c1/regenerate", json={}, headers=HEADERS)

        assert _frames(response)[-1]["finishReason"] == "stop"
        listed = harness.client.get("/api/chat/c1/messages", headers=HEADERS).json()["messages"]
        assert [m["id"] for m in listed[:3]] == [u1.id, a1.id, u2.id]
        assert listed[3]["content"] == "Unsafe only relaxes a few checks."

    def test_delete_after(self, harness):
        u1, a1, u2, a2 = harness.seed()
        response = harness.client.delete(
            "/api/chat/c1/messages", params={"afterMessageId": a1.id}, headers=HEADERS
        )

        assert response.json() == {"success": True, "deletedCount": 2}
        listed = harness.client.get("/api/chat/c1/messages", headers=HEADERS).json()["messages"]
        assert [m["id"] for m in listed] == [u1.id, a1.id]
