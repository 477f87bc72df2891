"""Tests for the conversation orchestrator."""

import json

import pytest

from chat_fakes import (
    RecordingListener,
    function_call,
    text_round,
    tool_round,
)
from elvira_api.errors import ToolLoopLimitError, UpstreamStreamError
from elvira_api.services.llm_service import TextDelta
from elvira_api.services.orchestrator import (
    ConversationOrchestrator,
    TurnState,
    assistant_turn,
    message_text,
    user_turn,
)
from elvira_api.services.tools import DISPLAY_ITEMS, GET_ITEM_DETAIL, TOOL_DECLARATIONS


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def orchestrator(completions, fake_catalog, listener) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        completions,
        fake_catalog,
        listener,
        agent_name="Elvira",
        max_rounds=3,
    )


# ============================================================================
# Transcript Helpers
# ============================================================================


class TestTranscriptItems:
    def test_user_turn_shape(self):
        assert user_turn("hi") == {
            "role": "user",
            "content": [{"type": "input_text", "text": "hi"}],
        }

    def test_message_text_round_trips_assistant_turn(self):
        assert message_text(assistant_turn("msg_1", "Hello")) == "Hello"

    def test_message_text_includes_refusals(self):
        item = {"content": [{"type": "refusal", "refusal": "No."}]}
        assert message_text(item) == "No."


# ============================================================================
# Turns
# ============================================================================


class TestChat:
    """Tests for a single user turn."""

    async def test_text_only_turn(self, orchestrator, completions, listener):
        completions.script(text_round("msg_1", "Hello there", tokens=12))

        usage = await orchestrator.chat("hi")

        assert orchestrator.state == TurnState.COMPLETED
        assert usage.total_tokens == 12
        assert listener.of_type("chunk") == ["Hello", " there"]
        assert listener.of_type("message") == ["Hello there"]
        assert [item.get("role") for item in orchestrator.transcript] == ["user", "assistant"]

    async def test_every_round_sends_transcript_instructions_and_tools(
        self, orchestrator, completions
    ):
        completions.script(text_round("msg_1", "Hello"))

        await orchestrator.chat("hi")

        request = completions.requests[0]
        assert request["transcript"] == [user_turn("hi")]
        assert "You are Elvira" in request["instructions"]
        assert request["tools"] is TOOL_DECLARATIONS

    async def test_tool_round_then_answer(self, orchestrator, completions, listener):
        completions.script(
            tool_round(
                function_call(DISPLAY_ITEMS, {"items": [{"id": "e-1", "catalogId": "cat-sf"}]}),
                tokens=5,
            ),
            text_round("msg_2", "Here is Dune", tokens=10),
        )

        usage = await orchestrator.chat("show me dune")

        assert usage.total_tokens == 15
        assert orchestrator.rounds == 2
        assert listener.events[0] == ("entries", (["e-1"], {"e-1": "cat-sf"}))
        assert listener.of_type("message") == ["Here is Dune"]

        types = [item.get("type") for item in orchestrator.transcript]
        assert types == [None, "function_call", "function_call_output", "message"]
        second = completions.requests[1]["transcript"]
        assert second[-1]["type"] == "function_call_output"

    async def test_tool_failure_does_not_abort_turn(self, orchestrator, completions):
        completions.script(
            tool_round(function_call(GET_ITEM_DETAIL, {"id": "e-404", "catalogId": None})),
            text_round("msg_2", "I could not find it"),
        )

        await orchestrator.chat("details of e-404")

        assert orchestrator.state == TurnState.COMPLETED
        output = json.loads(orchestrator.transcript[2]["output"])
        assert output["success"] is False

    async def test_round_cap_fails_turn(self, orchestrator, completions):
        completions.script(
            *[tool_round(function_call(DISPLAY_ITEMS, {"items": [{"id": "e-1", "catalogId": "c"}]}))]
            * 3
        )

        with pytest.raises(ToolLoopLimitError):
            await orchestrator.chat("loop forever")

        assert orchestrator.state == TurnState.FAILED
        assert orchestrator.rounds == 3

    async def test_zero_round_cap_means_unlimited(self, completions, fake_catalog, listener):
        orchestrator = ConversationOrchestrator(completions, fake_catalog, listener, max_rounds=0)
        call = function_call(DISPLAY_ITEMS, {"items": [{"id": "e-1", "catalogId": "c"}]})
        completions.script(*[tool_round(call)] * 5, text_round("msg_1", "done"))

        await orchestrator.chat("go")

        assert orchestrator.rounds == 6
        assert orchestrator.state == TurnState.COMPLETED

    async def test_upstream_failure_keeps_partial_output(self, orchestrator, completions, listener):
        completions.script([TextDelta(item_id="msg_1", delta="Hel"), UpstreamStreamError("boom")])

        with pytest.raises(UpstreamStreamError):
            await orchestrator.chat("hi")

        assert orchestrator.state == TurnState.FAILED
        assert listener.of_type("chunk") == ["Hel"]
        assert orchestrator.transcript == [user_turn("hi")]

    async def test_stream_without_completion_fails(self, orchestrator, completions):
        completions.script([TextDelta(item_id="msg_1", delta="Hel")])

        with pytest.raises(UpstreamStreamError):
            await orchestrator.chat("hi")

        assert orchestrator.state == TurnState.FAILED

    async def test_usage_accumulates_across_turns(self, orchestrator, completions):
        completions.script(text_round("msg_1", "one", tokens=10), text_round("msg_2", "two", tokens=20))

        await orchestrator.chat("first")
        usage = await orchestrator.chat("second")

        assert usage.total_tokens == 20
        assert orchestrator.total_usage.total_tokens == 30
        assert len(orchestrator.transcript) == 4


# ============================================================================
# Focus
# ============================================================================


class TestFocus:
    """Tests for the focus entry."""

    def test_initial_focus_in_instructions(self, completions, fake_catalog, listener):
        orchestrator = ConversationOrchestrator(
            completions,
            fake_catalog,
            listener,
            focus_item_id="e-1",
            focus_catalog_id="cat-sf",
        )

        instructions = orchestrator.instructions()
        assert "Focus Entry Id: e-1" in instructions
        assert "Focus Catalog Id: cat-sf" in instructions

    def test_no_focus_reads_none(self, orchestrator):
        assert "Focus Entry Id: none" in orchestrator.instructions()

    async def test_set_focus_applies_to_next_round_only(self, orchestrator, completions):
        completions.script(text_round("msg_1", "a"), text_round("msg_2", "b"))
        await orchestrator.chat("first")

        orchestrator.set_focus("e-2", "cat-classics")
        await orchestrator.chat("second")

        assert "Focus Entry Id: none" in completions.requests[0]["instructions"]
        assert "Focus Entry Id: e-2" in completions.requests[1]["instructions"]
        assert orchestrator.focus.catalog_id == "cat-classics"
        assert orchestrator.tools.resolve_catalog("e-2") == "cat-classics"

