"""
Turn orchestrator tests.

The provider is scripted (see helpers.ScriptedProvider), so each test pins
down the exact sequence of model steps and checks how the loop reacts.
"""

import asyncio
import json

from errors import ErrorCode, ProviderError
from routers.chat_orchestration import FinishReason, ModelMessage, StepEvent, ToolCall, TurnOrchestrator
from routers.chat_orchestration.turn import ToolState

from helpers import FailingProvider, ScriptedProvider, make_registry, make_tool, text_step, tool_step

HISTORY = [
    ModelMessage(role="system", content="You are helpful."),
    ModelMessage(role="user", content="What changed in Python 3.13?"),
]

SEARCH_RESULT = {
    "success": True,
    "results": [{"title": "What's New", "url": "https://docs.python.org/3.13/whatsnew"}],
    "sources_for_citation": [
        {"title": "What's New In Python 3.13", "url": "https://docs.python.org/3.13/whatsnew", "snippet": "Summary"}
    ],
}


def _search_registry():
    return make_registry(make_tool("web_search", result=SEARCH_RESULT, required=["query"]))


class TestRunTurn:
    """Test the step loop."""

    def test_text_only_answer(self, collected_frames):
        frames, emit = collected_frames
        provider = ScriptedProvider([[StepEvent(text="Hello"), StepEvent(text=" there")]])
        orchestrator = TurnOrchestrator(provider, chat_id="c1", emit=emit)

        result = asyncio.run(orchestrator.run_turn(HISTORY, make_registry()))

        assert result.finish_reason == FinishReason.STOP
        assert result.text == "Hello there"
        assert result.steps == 1
        assert result.sources == []
        assert frames == [
            {"type": "step", "step": 1},
            {"type": "text", "delta": "Hello"},
            {"type": "text", "delta": " there"},
        ]
        # No tools registered: the provider gets no schema
        assert provider.tools == [None]

    def test_tool_then_answer(self):
        """Tool results are fed back and their sources end up on the result."""
        call = ToolCall(id="call_1", name="web_search", arguments={"query": "python 3.13"})
        provider = ScriptedProvider([tool_step(call), text_step("Free-threading and a new REPL.")])
        orchestrator = TurnOrchestrator(provider, chat_id="c1")

        result = asyncio.run(orchestrator.run_turn(HISTORY, _search_registry()))

        assert result.finish_reason == FinishReason.STOP
        assert result.text == "Free-threading and a new REPL."
        assert result.steps == 2
        assert result.tools_used == ["web_search"]
        assert [s.url for s in result.sources] == ["https://docs.python.org/3.13/whatsnew"]

        second_call = provider.calls[1]
        assert [m.role for m in second_call] == ["system", "user", "assistant", "tool"]
        assert second_call[2].tool_calls == [call]
        assert second_call[3].tool_call_id == "call_1"
        assert json.loads(second_call[3].content)["success"] is True
        assert provider.tools[0][0]["function"]["name"] == "web_search"

    def test_history_not_mutated(self):
        call = ToolCall(id="call_1", name="web_search", arguments={"query": "q"})
        provider = ScriptedProvider([tool_step(call), text_step("done")])
        history = list(HISTORY)
        asyncio.run(TurnOrchestrator(provider).run_turn(history, _search_registry()))
        assert history == HISTORY

    def test_extra_options_passed(self):
        provider = ScriptedProvider([text_step("ok")])
        orchestrator = TurnOrchestrator(provider, extra_options={"prompt_cache_retention": "24h"})
        asyncio.run(orchestrator.run_turn(HISTORY, make_registry()))
        assert provider.options == [{"prompt_cache_retention": "24h"}]

    def test_step_limit(self):
        """Budget of 2 with tools requested every step ends in STEP_LIMIT."""
        provider = ScriptedProvider([
            tool_step(ToolCall(id="a", name="web_search", arguments={"query": "one"})),
            tool_step(ToolCall(id="b", name="web_search", arguments={"query": "two"})),
        ])
        orchestrator = TurnOrchestrator(provider, chat_id="c1")

        result = asyncio.run(orchestrator.run_turn(HISTORY, _search_registry(), step_budget=2))

        assert result.finish_reason == FinishReason.STEP_LIMIT
        assert result.text == ""
        assert result.steps == 2
        assert len(provider.calls) == 2
        # Tools of the last budgeted step still ran
        assert [inv.call_id for inv in result.invocations] == ["a", "b"]

    def test_budget_must_be_positive(self):
        orchestrator = TurnOrchestrator(ScriptedProvider([]))
        try:
            asyncio.run(orchestrator.run_turn(HISTORY, make_registry(), step_budget=0))
        except ValueError:
            pass
        else:
            raise AssertionError("expected ValueError")

    def test_unknown_tool_is_reported_to_model(self):
        """A hallucinated tool name produces an error result, not a crash."""
        provider = ScriptedProvider([
            tool_step(ToolCall(id="x", name="launch_rockets")),
            text_step("I can't do that."),
        ])
        result = asyncio.run(TurnOrchestrator(provider).run_turn(HISTORY, _search_registry()))

        assert result.finish_reason == FinishReason.STOP
        assert result.invocations[0].state == ToolState.FAILED
        tool_message = provider.calls[1][-1]
        assert json.loads(tool_message.content)["error"]["code"] == "TOOL_NOT_FOUND"

    def test_failed_tool_keeps_other_sources(self):
        async def broken(query: str = ""):
            raise RuntimeError("timeout talking to upstream")

        registry = make_registry(
            make_tool("web_search", result=SEARCH_RESULT),
            make_tool("web_scraper", executor=broken),
        )
        provider = ScriptedProvider([
            tool_step(
                ToolCall(id="s", name="web_search", arguments={"query": "q"}),
                ToolCall(id="p", name="web_scraper", arguments={"query": "q"}),
            ),
            text_step("Partial answer."),
        ])

        result = asyncio.run(TurnOrchestrator(provider).run_turn(HISTORY, registry))

        assert result.finish_reason == FinishReason.STOP
        assert len(result.sources) == 1
        assert [inv.state for inv in result.invocations] == [ToolState.SUCCEEDED, ToolState.FAILED]


class TestProviderFailure:
    """Provider errors end the turn and carry turn context."""

    def test_generic_exception_wrapped(self):
        provider = FailingProvider(ConnectionError("connection reset"))
        try:
            asyncio.run(TurnOrchestrator(provider, chat_id="c1").run_turn(HISTORY, make_registry()))
        except ProviderError as e:
            assert e.chat_id == "c1"
            assert e.step == 1
            assert e.tools_attempted == []
            assert "connection reset" in e.details
        else:
            raise AssertionError("expected ProviderError")
        # Not retried
        assert provider.calls == 1

    def test_failure_after_tools(self):
        class FailsSecondStep(ScriptedProvider):
            async def stream_step(self, messages, tools=None, extra_options=None):
                if self.calls:
                    raise ProviderError("Rate limited", error_type="rate_limit")
                async for event in super().stream_step(messages, tools, extra_options):
                    yield event

        provider = FailsSecondStep([tool_step(ToolCall(id="a", name="web_search", arguments={"query": "q"}))])
        try:
            asyncio.run(TurnOrchestrator(provider, chat_id="c9").run_turn(HISTORY, _search_registry()))
        except ProviderError as e:
            assert e.code == ErrorCode.PROVIDER_RATE_LIMITED
            assert e.step == 2
            assert e.tools_attempted == ["web_search"]
        else:
            raise AssertionError("expected ProviderError")

    def test_emit_failure_not_reported_as_provider_error(self):
        """A broken frame sink surfaces as itself, not as a provider fault."""
        provider = ScriptedProvider([text_step("Hello")])

        async def emit(frame):
            if frame["type"] == "text":
                raise BrokenPipeError("client went away")

        try:
            asyncio.run(TurnOrchestrator(provider, chat_id="c1", emit=emit).run_turn(HISTORY, make_registry()))
        except ProviderError:
            raise AssertionError("emit failure reported as ProviderError")
        except BrokenPipeError:
            pass
        else:
            raise AssertionError("expected BrokenPipeError")


class TestCancellation:
    """Cancel event handling."""

    def test_cancel_before_start(self):
        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            provider = ScriptedProvider([text_step("never")])
            result = await TurnOrchestrator(provider).run_turn(HISTORY, make_registry(), cancel=cancel)
            return result, provider

        result, provider = asyncio.run(scenario())
        assert result.finish_reason == FinishReason.ABORTED
        assert provider.calls == []

    def test_cancel_mid_stream(self):
        """Cancelling while the model streams aborts with empty text."""

        async def scenario():
            cancel = asyncio.Event()
            gate = asyncio.Event()
            provider = ScriptedProvider([[StepEvent(text="partial"), StepEvent(text=" more")]], gate=gate)
            task = asyncio.create_task(
                TurnOrchestrator(provider).run_turn(HISTORY, make_registry(), cancel=cancel)
            )
            await asyncio.sleep(0.01)
            cancel.set()
            return await task

        result = asyncio.run(scenario())
        assert result.finish_reason == FinishReason.ABORTED
        assert result.text == ""

    def test_cancel_during_tools(self, collected_frames):
        """Cancelling while tools run aborts without another model step."""
        frames, emit = collected_frames
        started = []

        async def slow(query: str = ""):
            started.append(query)
            await asyncio.sleep(5)
            return {"success": True}

        async def scenario():
            cancel = asyncio.Event()
            provider = ScriptedProvider([
                tool_step(ToolCall(id="a", name="slow", arguments={"query": "q"})),
                text_step("never"),
            ])
            task = asyncio.create_task(
                TurnOrchestrator(provider, emit=emit).run_turn(
                    HISTORY, make_registry(make_tool("slow", executor=slow)), cancel=cancel
                )
            )
            while not started:
                await asyncio.sleep(0.005)
            cancel.set()
            return await task, provider

        result, provider = asyncio.run(scenario())
        assert result.finish_reason == FinishReason.ABORTED
        assert len(provider.calls) == 1
        assert not any(f["type"] == "tool_end" for f in frames)
