"""Tests for the session registry."""

import asyncio

import pytest

from chat_fakes import FakeCatalog, StreamGate, function_call, text_round, tool_round
from elvira_api.services.session_registry import (
    SessionRegistry,
    display_summary,
    provider_message_id,
    with_display_metadata,
)
from elvira_api.services.tools import DISPLAY_ITEMS
from elvira_shared.config import AgentSettings
from elvira_shared.storage import LocalStorage, StorageError

DISPLAY_CALL = function_call(
    DISPLAY_ITEMS,
    {"items": [{"id": "e-1", "catalogId": "cat-sf"}, {"id": "e-2", "catalogId": "cat-classics"}]},
)


@pytest.fixture
def registry(local_storage, completions) -> SessionRegistry:
    return SessionRegistry(local_storage, completions, AgentSettings(max_tool_rounds=4))


async def run_turn(registry, session, text):
    await registry.log_user_message(session, text)
    await session.orchestrator.chat(text)
    await registry.flush(session.chat_id)


# ============================================================================
# Display Metadata
# ============================================================================


class TestDisplayText:
    """Tests for the text stored for item displays."""

    def test_display_summary_format(self):
        text = display_summary(["a", "b"], {"a": "c1", "b": "c2"})

        assert text == '[Displayed 2 item(s) with IDs: a, b] [Item Catalogs: {"a":"c1","b":"c2"}]'

    def test_metadata_appended_to_plain_text(self):
        text = with_display_metadata("Here you go", ["a"], {"a": "c1"})

        assert text == 'Here you go\n\n[Displayed 1 item(s) with IDs: a] [Item Catalogs: {"a":"c1"}]'

    def test_catalogs_added_to_legacy_display_text(self):
        text = with_display_metadata("[Displayed 1 item(s) with IDs: a]", ["a"], {"a": "c1"})

        assert text == '[Displayed 1 item(s) with IDs: a] [Item Catalogs: {"a":"c1"}]'

    def test_text_with_catalogs_left_alone(self):
        text = display_summary(["a"], {"a": "c1"})
        assert with_display_metadata(text, ["a"], {"a": "c1"}) == text

    def test_no_items_left_alone(self):
        assert with_display_metadata("hello", None, None) == "hello"


# ============================================================================
# Lifecycle
# ============================================================================


class TestCreate:
    """Tests for creating sessions."""

    async def test_create_registers_and_persists(self, registry, local_storage, fake_catalog):
        session = await registry.create("chat-1", "u-alice", fake_catalog, "e-1", "cat-sf")

        assert registry.get("chat-1") is session
        assert registry.has_session("chat-1")
        assert registry.active_count() == 1
        assert session.orchestrator.focus.item_id == "e-1"
        chat = await local_storage.get_chat("chat-1")
        assert chat.user_id == "u-alice"

    async def test_create_is_idempotent(self, registry, fake_catalog):
        first = await registry.create("chat-1", "u-alice", fake_catalog)
        second = await registry.create("chat-1", "u-alice", fake_catalog)

        assert first is second
        assert registry.active_count() == 1

    async def test_session_key_must_match_exactly(self, registry):
        session = await registry.create("chat-1", "u-alice", FakeCatalog(api_key="key-a"))

        assert session.matches_key("key-a")
        assert not session.matches_key("key-b")
        assert not session.matches_key(None)


class TestTurnEvents:
    """Tests for events and persistence of a live turn."""

    async def test_events_queued_in_order(self, registry, completions, fake_catalog):
        session = await registry.create("chat-1", "u-alice", fake_catalog)
        completions.script(tool_round(DISPLAY_CALL), text_round("msg_1", "Two classics"))

        await run_turn(registry, session, "show me books")

        types = [event.type for event in session.events]
        assert types == ["entries", "chunk", "chunk", "message"]
        assert registry.queue_length("chat-1") == 4
        entries = registry.event_at("chat-1", 0)
        assert entries.data == ["e-1", "e-2"]
        assert entries.item_catalogs == {"e-1": "cat-sf", "e-2": "cat-classics"}
        assert registry.event_at("chat-1", 4) is None
        assert registry.event_at("missing", 0) is None

    async def test_messages_persisted_in_emission_order(
        self, registry, completions, fake_catalog, local_storage
    ):
        session = await registry.create("chat-1", "u-alice", fake_catalog, "e-9", "cat-x")
        completions.script(tool_round(DISPLAY_CALL), text_round("msg_1", "Two classics"))

        await run_turn(registry, session, "show me books")

        messages = await local_storage.list_messages("chat-1")
        assert [m.sender for m in messages] == ["user", "agent", "agent"]
        assert messages[0].text == "show me books"
        assert messages[1].item_ids == ["e-1", "e-2"]
        assert messages[1].item_catalogs == {"e-1": "cat-sf", "e-2": "cat-classics"}
        assert messages[1].text.startswith("[Displayed 2 item(s)")
        assert messages[2].text == "Two classics"
        assert messages[2].msg_id == "msg_1"
        assert messages[2].entry_id == "e-9"
        assert messages[2].catalog_id == "cat-x"

    async def test_timestamps_strictly_increase(
        self, registry, completions, fake_catalog, local_storage
    ):
        session = await registry.create("chat-1", "u-alice", fake_catalog)
        completions.script(tool_round(DISPLAY_CALL), text_round("msg_1", "a"), text_round("msg_2", "b"))

        await run_turn(registry, session, "first")
        await run_turn(registry, session, "second")

        timestamps = [m.timestamp for m in await local_storage.list_messages("chat-1")]
        assert len(timestamps) == 5
        assert all(earlier < later for earlier, later in zip(timestamps, timestamps[1:]))

    async def test_chunks_are_not_persisted(
        self, registry, completions, fake_catalog, local_storage
    ):
        session = await registry.create("chat-1", "u-alice", fake_catalog)
        completions.script(text_round("msg_1", "Hello there"))

        await run_turn(registry, session, "hi")

        chat = await local_storage.get_chat("chat-1")
        assert chat.message_count == 2


# ============================================================================
# Resume
# ============================================================================


class TestResume:
    """Tests for rebuilding sessions from the persisted log."""

    async def test_resume_replays_history(self, registry, local_storage, fake_catalog):
        await local_storage.create_chat("chat-1", "u-alice")
        await local_storage.append_message("chat-1", "user", "show me books", user_id="u-alice")
        await local_storage.append_message(
            "chat-1",
            "agent",
            "Here are two",
            user_id="u-alice",
            msg_id="msg_abc",
            item_ids=["e-1"],
            item_catalogs={"e-1": "cat-sf"},
        )

        session = await registry.resume("chat-1", "u-alice", fake_catalog)

        transcript = session.orchestrator.transcript
        assert transcript[0]["role"] == "user"
        assert transcript[1]["id"] == "msg_abc"
        assert transcript[1]["content"][0]["text"] == (
            'Here are two\n\n[Displayed 1 item(s) with IDs: e-1] [Item Catalogs: {"e-1":"cat-sf"}]'
        )
        assert [event.type for event in session.events] == ["entries"]
        assert session.orchestrator.tools.resolve_catalog("e-1") == "cat-sf"

    async def test_resume_derives_missing_provider_ids(self, registry, local_storage, fake_catalog):
        await local_storage.create_chat("chat-1", "u-alice")
        stored = await local_storage.append_message("chat-1", "agent", "Hi", msg_id="resp-legacy")

        session = await registry.resume("chat-1", "u-alice", fake_catalog)

        expected = "msg_" + stored.id.replace("-", "")
        assert provider_message_id(stored) == expected
        assert session.orchestrator.transcript[0]["id"] == expected

    async def test_resume_continues_timestamps(self, registry, local_storage, fake_catalog):
        await local_storage.create_chat("chat-1", "u-alice")
        last = await local_storage.append_message("chat-1", "user", "hi")

        session = await registry.resume("chat-1", "u-alice", fake_catalog)

        assert session.next_timestamp() > last.timestamp

    async def test_resume_of_live_session_returns_it(self, registry, fake_catalog):
        live = await registry.create("chat-1", "u-alice", fake_catalog)

        assert await registry.resume("chat-1", "u-alice", fake_catalog) is live

    async def test_resumed_session_sends_history_to_model(
        self, registry, local_storage, completions, fake_catalog
    ):
        await local_storage.create_chat("chat-1", "u-alice")
        await local_storage.append_message("chat-1", "user", "earlier question")
        await local_storage.append_message("chat-1", "agent", "earlier answer", msg_id="msg_1")
        session = await registry.resume("chat-1", "u-alice", fake_catalog)
        completions.script(text_round("msg_2", "new answer"))

        await run_turn(registry, session, "new question")

        sent = completions.requests[0]["transcript"]
        assert len(sent) == 3
        assert sent[1]["content"][0]["text"] == "earlier answer"


# ============================================================================
# Removal and Termination
# ============================================================================


class TestRemoval:
    """Tests for removing and terminating sessions."""

    async def test_remove_purges_messages(self, registry, local_storage, completions, fake_catalog):
        session = await registry.create("chat-1", "u-alice", fake_catalog)
        completions.script(text_round("msg_1", "hello"))
        await run_turn(registry, session, "hi")

        assert await registry.remove("chat-1") is True

        assert not registry.has_session("chat-1")
        assert session.closed is True
        assert await local_storage.list_messages("chat-1") == []

    async def test_events_after_removal_are_dropped(self, registry, local_storage, fake_catalog):
        session = await registry.create("chat-1", "u-alice", fake_catalog)
        await registry.remove("chat-1")

        session.orchestrator.listener.on_message("late", "msg_9")
        await registry.flush("chat-1")

        assert session.events == []
        assert await local_storage.list_messages("chat-1") == []

    async def test_remove_unknown_session(self, registry):
        assert await registry.remove("missing") is False

    async def test_terminate_for_user_keeps_history(
        self, registry, local_storage, completions, fake_catalog
    ):
        alice_chat = await registry.create("chat-a", "u-alice", fake_catalog)
        await registry.create("chat-b", "u-bob", FakeCatalog(api_key="key-bob"))
        completions.script(text_round("msg_1", "hello"))
        await run_turn(registry, alice_chat, "hi")

        terminated = await registry.terminate_for_user("u-alice")

        assert terminated == ["chat-a"]
        assert registry.session_ids_for_user("u-alice") == []
        assert registry.session_ids_for_user("u-bob") == ["chat-b"]
        assert len(await local_storage.list_messages("chat-a")) == 2

    async def test_terminate_keeps_rows_already_sent_to_client(
        self, registry, local_storage, fake_catalog
    ):
        session = await registry.create("chat-a", "u-alice", fake_catalog)
        listener = session.orchestrator.listener
        listener.on_message("Here you go", "msg_1")
        listener.on_entries(["e-1"], {"e-1": "cat-sf"})

        await registry.terminate_for_user("u-alice")
        await registry.drain()

        messages = await local_storage.list_messages("chat-a")
        assert [m.text for m in messages] == [
            "Here you go",
            display_summary(["e-1"], {"e-1": "cat-sf"}),
        ]
        assert messages[1].item_ids == ["e-1"]
        assert messages[1].item_catalogs == {"e-1": "cat-sf"}

    async def test_block_during_turn_ends_every_session_quietly(
        self, registry, local_storage, completions, fake_catalog
    ):
        busy = await registry.create("chat-a", "u-alice", fake_catalog)
        await registry.create("chat-b", "u-alice", fake_catalog)
        gate = StreamGate()
        held = text_round("msg_1", "Hello there")
        held.insert(1, gate)
        completions.script(held)
        await registry.log_user_message(busy, "hi")

        turn = asyncio.create_task(busy.orchestrator.chat("hi"))
        await gate.reached.wait()
        sent = list(busy.events)

        terminated = await registry.terminate_for_user("u-alice")
        gate.release.set()
        await turn
        await registry.drain()

        assert sorted(terminated) == ["chat-a", "chat-b"]
        assert registry.session_ids_for_user("u-alice") == []
        assert registry.queue_length("chat-a") == 0
        assert registry.event_at("chat-a", 0) is None
        assert busy.events == sent
        assert [e.type for e in sent] == ["chunk"]
        messages = await local_storage.list_messages("chat-a")
        assert [m.sender for m in messages] == ["user"]


class TestPersistenceFailures:
    """Persistence failures are logged, never raised."""

    async def test_failed_write_does_not_raise(self, completions, fake_catalog):
        class FailingStorage(LocalStorage):
            async def append_message(self, chat_id, sender, text, **fields):
                raise StorageError("disk full")

        storage = FailingStorage()
        registry = SessionRegistry(storage, completions, AgentSettings())
        session = await registry.create("chat-1", "u-alice", fake_catalog)
        completions.script(text_round("msg_1", "hello"))

        await run_turn(registry, session, "hi")
        await registry.drain()

        assert [event.type for event in session.events] == ["chunk", "chunk", "message"]
        assert len(registry.tasks) == 0
