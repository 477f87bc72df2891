"""Storage Port: the persistence contract shared by every storage adapter.

Adapters conform structurally to :class:`StoragePort`; there is no shared
base class. Two contract rules matter to callers:

- ``create_chat`` is idempotent. A second call with the same id returns the
  existing record and writes nothing.
- Every history query returns messages strictly by ascending timestamp.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Sender = Literal["user", "agent"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class StorageError(Exception):
    """Raised by adapters when a write cannot be applied."""


class Record(BaseModel):
    """Base for storage records.

    Serializes to camelCase for API responses and accepts ORM rows directly.
    Naive datetimes (SQLite drops the zone) are read back as UTC.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    @field_validator("*", mode="after")
    @classmethod
    def _assume_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary for API responses."""
        return self.model_dump(mode="json", by_alias=True)


class UserRecord(Record):
    """A catalog user plus local moderation state."""

    id: str
    username: str = ""
    name: str = ""
    surname: str = ""
    is_superuser: bool = False
    permissions: list[str] = Field(default_factory=list)
    catalog_permissions: dict[str, str] = Field(default_factory=dict)
    blocked: bool = False
    blocked_reason: str | None = None
    blocked_until: datetime | None = None
    created_at: datetime | None = None
    last_seen_at: datetime | None = None

    @classmethod
    def from_profile(cls, profile: dict[str, Any]) -> UserRecord:
        """Build a record from the catalog identity payload."""
        return cls(
            id=str(profile["id"]),
            username=profile.get("username") or "",
            name=profile.get("name") or "",
            surname=profile.get("surname") or "",
            is_superuser=bool(profile.get("is_superuser", False)),
            permissions=list(profile.get("permissions") or []),
            catalog_permissions=dict(profile.get("catalog_permissions") or {}),
        )

    def is_blocked_at(self, now: datetime) -> bool:
        """Whether the block is in force at ``now``; expired blocks do not count."""
        if not self.blocked:
            return False
        return self.blocked_until is None or self.blocked_until > now


class UserPage(Record):
    """One page of users."""

    users: list[UserRecord]
    total: int
    page: int
    limit: int


class ChatRecord(Record):
    """A conversation and its running aggregates."""

    id: str
    user_id: str
    title: str | None = None
    started_at: datetime
    message_count: int = 0
    total_tokens: int = 0
    last_message_at: datetime | None = None


class MessageRecord(Record):
    """One entry of a chat's append-only message log."""

    id: str
    chat_id: str
    sender: Sender
    text: str
    timestamp: datetime
    user_id: str | None = None
    entry_id: str | None = None
    catalog_id: str | None = None
    msg_id: str | None = None
    item_ids: list[str] | None = None
    item_catalogs: dict[str, str] | None = None
    tokens_used: int = 0


class DailyLimitRecord(Record):
    """Usage counters for one user on one quota day."""

    id: str
    user_id: str
    day: date
    messages_used: int = 0
    messages_limit: int
    tokens_used: int = 0
    tokens_limit: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def messages_remaining(self) -> int:
        return max(0, self.messages_limit - self.messages_used)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.tokens_limit - self.tokens_used)


@runtime_checkable
class StoragePort(Protocol):
    """Persistence capability used by the Quota Governor and Session Registry."""

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    # Users
    async def upsert_user(self, profile: UserRecord) -> UserRecord: ...

    async def get_user(self, user_id: str) -> UserRecord | None: ...

    async def list_users(self) -> list[UserRecord]: ...

    async def get_users_paginated(self, page: int = 1, limit: int = 25) -> UserPage: ...

    async def set_user_blocked(
        self,
        user_id: str,
        blocked: bool,
        reason: str | None = None,
        until: datetime | None = None,
    ) -> UserRecord | None: ...

    async def is_user_blocked(self, user_id: str) -> bool: ...

    async def touch_user(self, user_id: str) -> None: ...

    # Chats and messages
    async def create_chat(
        self,
        chat_id: str,
        user_id: str,
        title: str | None = None,
    ) -> ChatRecord: ...

    async def get_chat(self, chat_id: str) -> ChatRecord | None: ...

    async def list_chats_by_user(self, user_id: str) -> list[ChatRecord]: ...

    async def append_message(
        self,
        chat_id: str,
        sender: Sender,
        text: str,
        *,
        user_id: str | None = None,
        entry_id: str | None = None,
        catalog_id: str | None = None,
        msg_id: str | None = None,
        item_ids: list[str] | None = None,
        item_catalogs: dict[str, str] | None = None,
        tokens_used: int = 0,
        timestamp: datetime | None = None,
    ) -> MessageRecord: ...

    async def list_messages(self, chat_id: str) -> list[MessageRecord]: ...

    async def list_user_messages_in_chat(
        self,
        chat_id: str,
        user_id: str,
    ) -> list[MessageRecord]: ...

    async def clear_messages(self, chat_id: str) -> None: ...

    async def record_chat_tokens(self, chat_id: str, tokens: int) -> None: ...

    # Daily limits
    async def get_daily_limit(self, user_id: str, day: date) -> DailyLimitRecord | None: ...

    async def create_daily_limit(
        self,
        user_id: str,
        day: date,
        messages_limit: int,
        tokens_limit: int,
    ) -> DailyLimitRecord: ...

    async def try_increment_daily_limit(
        self,
        limit_id: str,
        messages: int,
        tokens: int,
    ) -> DailyLimitRecord | None: ...

    async def increment_daily_limit(
        self,
        limit_id: str,
        messages: int,
        tokens: int,
    ) -> DailyLimitRecord | None: ...

    async def reset_daily_limits(self, before: date) -> int: ...
