"""Contract tests run against every Storage Port adapter."""

from datetime import date, timedelta

import pytest

from elvira_shared.storage import StorageError, utcnow


# =============================================================================
# Users
# =============================================================================


class TestUsers:
    """Tests for user upsert and block state."""

    async def test_upsert_creates_user(self, storage, alice):
        """A new profile is stored unblocked with timestamps."""
        user = await storage.upsert_user(alice)

        assert user.id == "u-alice"
        assert user.username == "alice"
        assert user.blocked is False
        assert user.created_at is not None
        assert user.last_seen_at is not None

    async def test_upsert_refreshes_profile_but_keeps_block(self, storage, alice):
        """Catalog refreshes never clear a local block."""
        await storage.upsert_user(alice)
        await storage.set_user_blocked("u-alice", True, reason="spam")

        refreshed = await storage.upsert_user(alice.model_copy(update={"name": "Alicia"}))

        assert refreshed.name == "Alicia"
        assert refreshed.blocked is True
        assert refreshed.blocked_reason == "spam"

    async def test_get_unknown_user(self, storage):
        """Unknown ids return None."""
        assert await storage.get_user("missing") is None

    async def test_block_and_unblock(self, storage, alice):
        """Blocking is reversible and unblocking clears the reason."""
        await storage.upsert_user(alice)

        await storage.set_user_blocked("u-alice", True, reason="abuse")
        assert await storage.is_user_blocked("u-alice") is True

        user = await storage.set_user_blocked("u-alice", False)
        assert user.blocked is False
        assert user.blocked_reason is None
        assert await storage.is_user_blocked("u-alice") is False

    async def test_expired_block_is_not_in_force(self, storage, alice):
        """A block whose end time has passed reads as unblocked."""
        await storage.upsert_user(alice)
        await storage.set_user_blocked(
            "u-alice", True, reason="cooldown", until=utcnow() - timedelta(minutes=1)
        )

        assert await storage.is_user_blocked("u-alice") is False

    async def test_block_unknown_user(self, storage):
        """Blocking an unknown user is a no-op returning None."""
        assert await storage.set_user_blocked("missing", True) is None

    async def test_users_paginated(self, storage, alice, bob):
        """Pagination reports the total and slices the listing."""
        await storage.upsert_user(alice)
        await storage.upsert_user(bob)

        page = await storage.get_users_paginated(page=2, limit=1)

        assert page.total == 2
        assert page.page == 2
        assert len(page.users) == 1


# =============================================================================
# Chats and messages
# =============================================================================


class TestChats:
    """Tests for chat creation and message history."""

    async def test_create_chat_is_idempotent(self, storage, alice):
        """Creating the same chat twice returns the first record."""
        await storage.upsert_user(alice)

        first = await storage.create_chat("chat-1", "u-alice", title="Books")
        second = await storage.create_chat("chat-1", "u-alice", title="Other")

        assert second.id == first.id
        assert second.title == "Books"
        assert second.started_at == first.started_at

    async def test_messages_ordered_by_timestamp(self, storage, alice):
        """History comes back in timestamp order regardless of append order."""
        await storage.upsert_user(alice)
        await storage.create_chat("chat-1", "u-alice")
        base = utcnow()

        await storage.append_message(
            "chat-1", "agent", "second", timestamp=base + timedelta(milliseconds=2)
        )
        await storage.append_message(
            "chat-1", "user", "first", user_id="u-alice", timestamp=base + timedelta(milliseconds=1)
        )

        messages = await storage.list_messages("chat-1")

        assert [m.text for m in messages] == ["first", "second"]

    async def test_append_updates_aggregates(self, storage, alice):
        """Appends bump the message count and token total."""
        await storage.upsert_user(alice)
        await storage.create_chat("chat-1", "u-alice")

        await storage.append_message("chat-1", "user", "hi", user_id="u-alice")
        await storage.append_message("chat-1", "agent", "hello", msg_id="msg_1", tokens_used=12)

        chat = await storage.get_chat("chat-1")
        assert chat.message_count == 2
        assert chat.total_tokens == 12
        assert chat.last_message_at is not None

    async def test_append_keeps_display_metadata(self, storage, alice):
        """Display messages keep their item ids and catalogs."""
        await storage.upsert_user(alice)
        await storage.create_chat("chat-1", "u-alice")

        await storage.append_message(
            "chat-1",
            "agent",
            "[Displayed 2 item(s) with IDs: a, b]",
            item_ids=["a", "b"],
            item_catalogs={"a": "cat-1", "b": "cat-2"},
        )

        [message] = await storage.list_messages("chat-1")
        assert message.item_ids == ["a", "b"]
        assert message.item_catalogs == {"a": "cat-1", "b": "cat-2"}

    async def test_append_to_unknown_chat_fails(self, storage):
        """Messages need an existing chat."""
        with pytest.raises(StorageError):
            await storage.append_message("missing", "user", "hi")

    async def test_list_user_messages_checks_owner(self, storage, alice, bob):
        """Another user's chat reads as empty."""
        await storage.upsert_user(alice)
        await storage.upsert_user(bob)
        await storage.create_chat("chat-1", "u-alice")
        await storage.append_message("chat-1", "user", "hi", user_id="u-alice")

        assert len(await storage.list_user_messages_in_chat("chat-1", "u-alice")) == 1
        assert await storage.list_user_messages_in_chat("chat-1", "u-bob") == []

    async def test_list_chats_by_user(self, storage, alice, bob):
        """Only the owner's chats are listed."""
        await storage.upsert_user(alice)
        await storage.upsert_user(bob)
        await storage.create_chat("chat-a", "u-alice")
        await storage.create_chat("chat-b", "u-bob")

        chats = await storage.list_chats_by_user("u-alice")

        assert [c.id for c in chats] == ["chat-a"]

    async def test_clear_messages(self, storage, alice):
        """Clearing empties the log and resets the count."""
        await storage.upsert_user(alice)
        await storage.create_chat("chat-1", "u-alice")
        await storage.append_message("chat-1", "user", "hi")

        await storage.clear_messages("chat-1")

        assert await storage.list_messages("chat-1") == []
        chat = await storage.get_chat("chat-1")
        assert chat.message_count == 0

    async def test_record_chat_tokens(self, storage, alice):
        """Turn tokens are added to the chat total."""
        await storage.upsert_user(alice)
        await storage.create_chat("chat-1", "u-alice")

        await storage.record_chat_tokens("chat-1", 40)
        await storage.record_chat_tokens("chat-1", 2)

        chat = await storage.get_chat("chat-1")
        assert chat.total_tokens == 42


# =============================================================================
# Daily limits
# =============================================================================


class TestDailyLimits:
    """Tests for daily limit counters."""

    async def test_create_is_get_or_create(self, storage, alice):
        """A second create for the same day returns the existing row."""
        await storage.upsert_user(alice)
        day = date(2026, 3, 1)

        first = await storage.create_daily_limit("u-alice", day, 5, 1000)
        second = await storage.create_daily_limit("u-alice", day, 99, 99)

        assert second.id == first.id
        assert second.messages_limit == 5

    async def test_try_increment_respects_limit(self, storage, alice):
        """The increment is refused once it would pass the limit."""
        await storage.upsert_user(alice)
        limit = await storage.create_daily_limit("u-alice", date(2026, 3, 1), 2, 1000)

        assert (await storage.try_increment_daily_limit(limit.id, 1, 0)).messages_used == 1
        assert (await storage.try_increment_daily_limit(limit.id, 1, 0)).messages_used == 2
        assert await storage.try_increment_daily_limit(limit.id, 1, 0) is None

        current = await storage.get_daily_limit("u-alice", date(2026, 3, 1))
        assert current.messages_used == 2

    async def test_increment_ignores_limit(self, storage, alice):
        """Unconditional increments may run past the limit."""
        await storage.upsert_user(alice)
        limit = await storage.create_daily_limit("u-alice", date(2026, 3, 1), 1, 10)

        updated = await storage.increment_daily_limit(limit.id, 0, 25)

        assert updated.tokens_used == 25

    async def test_reset_deletes_older_days(self, storage, alice):
        """Only rows for days before the cut-off are removed."""
        await storage.upsert_user(alice)
        await storage.create_daily_limit("u-alice", date(2026, 2, 27), 5, 10)
        await storage.create_daily_limit("u-alice", date(2026, 2, 28), 5, 10)
        await storage.create_daily_limit("u-alice", date(2026, 3, 1), 5, 10)

        removed = await storage.reset_daily_limits(date(2026, 3, 1))

        assert removed == 2
        assert await storage.get_daily_limit("u-alice", date(2026, 2, 28)) is None
        assert await storage.get_daily_limit("u-alice", date(2026, 3, 1)) is not None
