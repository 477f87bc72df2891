"""Process-local storage adapter.

Keeps every record in memory and, when a path is configured, mirrors the
whole store to a JSON file after each write. The file is replaced
atomically so a crash mid-write never leaves a truncated snapshot.
"""

import asyncio
import json
import os
from datetime import date, datetime
from pathlib import Path
from typing import Any

from ..db.models import generate_id
from ..logging import get_logger
from .port import (
    ChatRecord,
    DailyLimitRecord,
    MessageRecord,
    Sender,
    StorageError,
    UserPage,
    UserRecord,
    utcnow,
)

logger = get_logger(__name__)


class LocalStorage:
    """In-memory Storage Port adapter with optional JSON persistence."""

    def __init__(self, path: str | os.PathLike[str] | None = None):
        self._path = Path(path) if path else None
        self._lock = asyncio.Lock()
        self._users: dict[str, UserRecord] = {}
        self._chats: dict[str, ChatRecord] = {}
        self._messages: dict[str, list[MessageRecord]] = {}
        self._limits: dict[str, DailyLimitRecord] = {}

    @property
    def path(self) -> Path | None:
        return self._path

    async def init(self) -> None:
        if self._path is None or not self._path.exists():
            logger.info("Local storage initialized", path=str(self._path) if self._path else None)
            return

        raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        if raw.strip():
            self._load(json.loads(raw))
        logger.info(
            "Local storage loaded",
            path=str(self._path),
            users=len(self._users),
            chats=len(self._chats),
        )

    async def close(self) -> None:
        async with self._lock:
            await self._flush()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def upsert_user(self, profile: UserRecord) -> UserRecord:
        async with self._lock:
            now = utcnow()
            existing = self._users.get(profile.id)
            if existing is None:
                user = profile.model_copy(
                    update={"created_at": now, "last_seen_at": now, "blocked": False}
                )
            else:
                user = existing.model_copy(
                    update={
                        "username": profile.username,
                        "name": profile.name,
                        "surname": profile.surname,
                        "is_superuser": profile.is_superuser,
                        "permissions": list(profile.permissions),
                        "catalog_permissions": dict(profile.catalog_permissions),
                        "last_seen_at": now,
                    }
                )
            self._users[user.id] = user
            await self._flush()
            return user

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)

    async def list_users(self) -> list[UserRecord]:
        return sorted(self._users.values(), key=lambda u: u.created_at or utcnow())

    async def get_users_paginated(self, page: int = 1, limit: int = 25) -> UserPage:
        users = await self.list_users()
        page = max(1, page)
        start = (page - 1) * limit
        return UserPage(users=users[start:start + limit], total=len(users), page=page, limit=limit)

    async def set_user_blocked(
        self,
        user_id: str,
        blocked: bool,
        reason: str | None = None,
        until: datetime | None = None,
    ) -> UserRecord | None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            user = user.model_copy(
                update={
                    "blocked": blocked,
                    "blocked_reason": reason if blocked else None,
                    "blocked_until": until if blocked else None,
                }
            )
            self._users[user_id] = user
            await self._flush()
            return user

    async def is_user_blocked(self, user_id: str) -> bool:
        user = self._users.get(user_id)
        return user is not None and user.is_blocked_at(utcnow())

    async def touch_user(self, user_id: str) -> None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return
            self._users[user_id] = user.model_copy(update={"last_seen_at": utcnow()})
            await self._flush()

    # ------------------------------------------------------------------
    # Chats and messages
    # ------------------------------------------------------------------

    async def create_chat(
        self,
        chat_id: str,
        user_id: str,
        title: str | None = None,
    ) -> ChatRecord:
        async with self._lock:
            existing = self._chats.get(chat_id)
            if existing is not None:
                return existing
            chat = ChatRecord(id=chat_id, user_id=user_id, title=title, started_at=utcnow())
            self._chats[chat_id] = chat
            self._messages.setdefault(chat_id, [])
            await self._flush()
            return chat

    async def get_chat(self, chat_id: str) -> ChatRecord | None:
        return self._chats.get(chat_id)

    async def list_chats_by_user(self, user_id: str) -> list[ChatRecord]:
        chats = [c for c in self._chats.values() if c.user_id == user_id]
        return sorted(chats, key=lambda c: c.started_at, reverse=True)

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
    ) -> MessageRecord:
        async with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                raise StorageError(f"Chat {chat_id} does not exist")

            message = MessageRecord(
                id=generate_id(),
                chat_id=chat_id,
                sender=sender,
                text=text,
                timestamp=timestamp or utcnow(),
                user_id=user_id,
                entry_id=entry_id,
                catalog_id=catalog_id,
                msg_id=msg_id,
                item_ids=list(item_ids) if item_ids is not None else None,
                item_catalogs=dict(item_catalogs) if item_catalogs is not None else None,
                tokens_used=tokens_used,
            )
            log = self._messages.setdefault(chat_id, [])
            log.append(message)
            log.sort(key=lambda m: m.timestamp)

            self._chats[chat_id] = chat.model_copy(
                update={
                    "message_count": chat.message_count + 1,
                    "total_tokens": chat.total_tokens + tokens_used,
                    "last_message_at": max(chat.last_message_at or message.timestamp, message.timestamp),
                }
            )
            await self._flush()
            return message

    async def list_messages(self, chat_id: str) -> list[MessageRecord]:
        return list(self._messages.get(chat_id, []))

    async def list_user_messages_in_chat(
        self,
        chat_id: str,
        user_id: str,
    ) -> list[MessageRecord]:
        chat = self._chats.get(chat_id)
        if chat is None or chat.user_id != user_id:
            return []
        return list(self._messages.get(chat_id, []))

    async def clear_messages(self, chat_id: str) -> None:
        async with self._lock:
            self._messages[chat_id] = []
            chat = self._chats.get(chat_id)
            if chat is not None:
                self._chats[chat_id] = chat.model_copy(
                    update={"message_count": 0, "last_message_at": None}
                )
            await self._flush()

    async def record_chat_tokens(self, chat_id: str, tokens: int) -> None:
        async with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                return
            self._chats[chat_id] = chat.model_copy(
                update={"total_tokens": chat.total_tokens + tokens}
            )
            await self._flush()

    # ------------------------------------------------------------------
    # Daily limits
    # ------------------------------------------------------------------

    async def get_daily_limit(self, user_id: str, day: date) -> DailyLimitRecord | None:
        for limit in self._limits.values():
            if limit.user_id == user_id and limit.day == day:
                return limit
        return None

    async def create_daily_limit(
        self,
        user_id: str,
        day: date,
        messages_limit: int,
        tokens_limit: int,
    ) -> DailyLimitRecord:
        async with self._lock:
            existing = await self.get_daily_limit(user_id, day)
            if existing is not None:
                return existing
            now = utcnow()
            limit = DailyLimitRecord(
                id=generate_id(),
                user_id=user_id,
                day=day,
                messages_limit=messages_limit,
                tokens_limit=tokens_limit,
                created_at=now,
                updated_at=now,
            )
            self._limits[limit.id] = limit
            await self._flush()
            return limit

    async def try_increment_daily_limit(
        self,
        limit_id: str,
        messages: int,
        tokens: int,
    ) -> DailyLimitRecord | None:
        async with self._lock:
            limit = self._limits.get(limit_id)
            if limit is None:
                return None
            if (
                limit.messages_used + messages > limit.messages_limit
                or limit.tokens_used + tokens > limit.tokens_limit
            ):
                return None
            return await self._increment(limit, messages, tokens)

    async def increment_daily_limit(
        self,
        limit_id: str,
        messages: int,
        tokens: int,
    ) -> DailyLimitRecord | None:
        async with self._lock:
            limit = self._limits.get(limit_id)
            if limit is None:
                return None
            return await self._increment(limit, messages, tokens)

    async def reset_daily_limits(self, before: date) -> int:
        async with self._lock:
            expired = [key for key, limit in self._limits.items() if limit.day < before]
            for key in expired:
                del self._limits[key]
            if expired:
                await self._flush()
            return len(expired)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _increment(
        self,
        limit: DailyLimitRecord,
        messages: int,
        tokens: int,
    ) -> DailyLimitRecord:
        updated = limit.model_copy(
            update={
                "messages_used": limit.messages_used + messages,
                "tokens_used": limit.tokens_used + tokens,
                "updated_at": utcnow(),
            }
        )
        self._limits[limit.id] = updated
        await self._flush()
        return updated

    def _snapshot(self) -> dict[str, Any]:
        return {
            "users": [u.model_dump(mode="json") for u in self._users.values()],
            "chats": [c.model_dump(mode="json") for c in self._chats.values()],
            "messages": {
                chat_id: [m.model_dump(mode="json") for m in log]
                for chat_id, log in self._messages.items()
            },
            "daily_limits": [d.model_dump(mode="json") for d in self._limits.values()],
        }

    def _load(self, data: dict[str, Any]) -> None:
        self._users = {
            u["id"]: UserRecord.model_validate(u) for u in data.get("users", [])
        }
        self._chats = {
            c["id"]: ChatRecord.model_validate(c) for c in data.get("chats", [])
        }
        self._messages = {
            chat_id: sorted(
                (MessageRecord.model_validate(m) for m in log),
                key=lambda m: m.timestamp,
            )
            for chat_id, log in data.get("messages", {}).items()
        }
        self._limits = {
            d["id"]: DailyLimitRecord.model_validate(d) for d in data.get("daily_limits", [])
        }

    async def _flush(self) -> None:
        """Write the snapshot to disk. Callers hold the lock."""
        if self._path is None:
            return
        payload = json.dumps(self._snapshot(), ensure_ascii=False)
        try:
            await asyncio.to_thread(self._write_atomic, self._path, payload)
        except OSError as e:
            logger.error("Failed to persist local storage", path=str(self._path), error=str(e))
            raise StorageError(f"Failed to write {self._path}: {e}") from e

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, path)
