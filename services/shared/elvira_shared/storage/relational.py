"""Relational storage adapter on SQLAlchemy (PostgreSQL or SQLite)."""

from datetime import date, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..db.connection import DatabaseConnection
from ..db.models import Chat, DailyLimit, Message, User
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


class RelationalStorage:
    """Storage Port adapter backed by a SQL database."""

    def __init__(self, db: DatabaseConnection):
        """Initialize the adapter.

        Args:
            db: Connection manager owning the engine and session factory.
        """
        self.db = db

    async def init(self) -> None:
        await self.db.connect()
        await self.db.create_tables()
        logger.info("Relational storage initialized")

    async def close(self) -> None:
        await self.db.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def upsert_user(self, profile: UserRecord) -> UserRecord:
        try:
            return await self._upsert_user(profile)
        except IntegrityError:
            # Lost an insert race; the row exists now.
            return await self._upsert_user(profile)

    async def _upsert_user(self, profile: UserRecord) -> UserRecord:
        now = utcnow()
        async with self.db.session() as session:
            user = await session.get(User, profile.id)
            if user is None:
                user = User(
                    id=profile.id,
                    username=profile.username,
                    name=profile.name,
                    surname=profile.surname,
                    is_superuser=profile.is_superuser,
                    permissions=list(profile.permissions),
                    catalog_permissions=dict(profile.catalog_permissions),
                    blocked=False,
                    created_at=now,
                    updated_at=now,
                    last_seen_at=now,
                )
                session.add(user)
            else:
                user.username = profile.username
                user.name = profile.name
                user.surname = profile.surname
                user.is_superuser = profile.is_superuser
                user.permissions = list(profile.permissions)
                user.catalog_permissions = dict(profile.catalog_permissions)
                user.last_seen_at = now
            await session.flush()
            return UserRecord.model_validate(user)

    async def get_user(self, user_id: str) -> UserRecord | None:
        async with self.db.session() as session:
            user = await session.get(User, user_id)
            return UserRecord.model_validate(user) if user else None

    async def list_users(self) -> list[UserRecord]:
        async with self.db.session() as session:
            result = await session.execute(select(User).order_by(User.created_at))
            return [UserRecord.model_validate(u) for u in result.scalars().all()]

    async def get_users_paginated(self, page: int = 1, limit: int = 25) -> UserPage:
        page = max(1, page)
        async with self.db.session() as session:
            total = await session.scalar(select(func.count()).select_from(User))
            result = await session.execute(
                select(User)
                .order_by(User.created_at)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            users = [UserRecord.model_validate(u) for u in result.scalars().all()]
        return UserPage(users=users, total=total or 0, page=page, limit=limit)

    async def set_user_blocked(
        self,
        user_id: str,
        blocked: bool,
        reason: str | None = None,
        until: datetime | None = None,
    ) -> UserRecord | None:
        async with self.db.session() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            user.blocked = blocked
            user.blocked_reason = reason if blocked else None
            user.blocked_until = until if blocked else None
            await session.flush()
            return UserRecord.model_validate(user)

    async def is_user_blocked(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        return user is not None and user.is_blocked_at(utcnow())

    async def touch_user(self, user_id: str) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(last_seen_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Chats and messages
    # ------------------------------------------------------------------

    async def create_chat(
        self,
        chat_id: str,
        user_id: str,
        title: str | None = None,
    ) -> ChatRecord:
        existing = await self.get_chat(chat_id)
        if existing is not None:
            return existing

        try:
            async with self.db.session() as session:
                chat = Chat(id=chat_id, user_id=user_id, title=title, started_at=utcnow())
                session.add(chat)
                await session.flush()
                return ChatRecord.model_validate(chat)
        except IntegrityError:
            existing = await self.get_chat(chat_id)
            if existing is None:
                raise StorageError(f"Could not create chat {chat_id}") from None
            return existing

    async def get_chat(self, chat_id: str) -> ChatRecord | None:
        async with self.db.session() as session:
            chat = await session.get(Chat, chat_id)
            return ChatRecord.model_validate(chat) if chat else None

    async def list_chats_by_user(self, user_id: str) -> list[ChatRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Chat)
                .where(Chat.user_id == user_id)
                .order_by(Chat.started_at.desc())
            )
            return [ChatRecord.model_validate(c) for c in result.scalars().all()]

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
        timestamp = timestamp or utcnow()
        try:
            async with self.db.session() as session:
                chat = await session.get(Chat, chat_id)
                if chat is None:
                    raise StorageError(f"Chat {chat_id} does not exist")

                message = Message(
                    chat_id=chat_id,
                    sender=sender,
                    text=text,
                    timestamp=timestamp,
                    user_id=user_id,
                    entry_id=entry_id,
                    catalog_id=catalog_id,
                    msg_id=msg_id,
                    item_ids=list(item_ids) if item_ids is not None else None,
                    item_catalogs=dict(item_catalogs) if item_catalogs is not None else None,
                    tokens_used=tokens_used,
                )
                session.add(message)

                chat.message_count = chat.message_count + 1
                chat.total_tokens = chat.total_tokens + tokens_used
                last = chat.last_message_at
                if last is None or last.replace(tzinfo=None) < timestamp.replace(tzinfo=None):
                    chat.last_message_at = timestamp
                await session.flush()
                return MessageRecord.model_validate(message)
        except SQLAlchemyError as e:
            logger.error("Failed to append message", chat_id=chat_id, error=str(e))
            raise StorageError(f"Failed to append message to {chat_id}: {e}") from e

    async def list_messages(self, chat_id: str) -> list[MessageRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.chat_id == chat_id)
                .order_by(Message.timestamp)
            )
            return [MessageRecord.model_validate(m) for m in result.scalars().all()]

    async def list_user_messages_in_chat(
        self,
        chat_id: str,
        user_id: str,
    ) -> list[MessageRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Message)
                .join(Chat, Chat.id == Message.chat_id)
                .where(Message.chat_id == chat_id, Chat.user_id == user_id)
                .order_by(Message.timestamp)
            )
            return [MessageRecord.model_validate(m) for m in result.scalars().all()]

    async def clear_messages(self, chat_id: str) -> None:
        async with self.db.session() as session:
            await session.execute(delete(Message).where(Message.chat_id == chat_id))
            await session.execute(
                update(Chat)
                .where(Chat.id == chat_id)
                .values(message_count=0, last_message_at=None)
                .execution_options(synchronize_session=False)
            )

    async def record_chat_tokens(self, chat_id: str, tokens: int) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(Chat)
                .where(Chat.id == chat_id)
                .values(total_tokens=Chat.total_tokens + tokens)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Daily limits
    # ------------------------------------------------------------------

    async def get_daily_limit(self, user_id: str, day: date) -> DailyLimitRecord | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(DailyLimit).where(
                    DailyLimit.user_id == user_id,
                    DailyLimit.day == day,
                )
            )
            limit = result.scalar_one_or_none()
            return DailyLimitRecord.model_validate(limit) if limit else None

    async def create_daily_limit(
        self,
        user_id: str,
        day: date,
        messages_limit: int,
        tokens_limit: int,
    ) -> DailyLimitRecord:
        existing = await self.get_daily_limit(user_id, day)
        if existing is not None:
            return existing

        try:
            async with self.db.session() as session:
                limit = DailyLimit(
                    user_id=user_id,
                    day=day,
                    messages_used=0,
                    messages_limit=messages_limit,
                    tokens_used=0,
                    tokens_limit=tokens_limit,
                )
                session.add(limit)
                await session.flush()
                return DailyLimitRecord.model_validate(limit)
        except IntegrityError:
            existing = await self.get_daily_limit(user_id, day)
            if existing is None:
                raise StorageError(f"Could not create daily limit for {user_id}") from None
            return existing

    async def try_increment_daily_limit(
        self,
        limit_id: str,
        messages: int,
        tokens: int,
    ) -> DailyLimitRecord | None:
        """Increment only if both counters stay within their limits.

        The check and the increment are one conditional UPDATE, so two
        concurrent callers can never both squeeze past the limit.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(DailyLimit)
                .where(
                    DailyLimit.id == limit_id,
                    DailyLimit.messages_used + messages <= DailyLimit.messages_limit,
                    DailyLimit.tokens_used + tokens <= DailyLimit.tokens_limit,
                )
                .values(
                    messages_used=DailyLimit.messages_used + messages,
                    tokens_used=DailyLimit.tokens_used + tokens,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            limit = await session.get(DailyLimit, limit_id, populate_existing=True)
            return DailyLimitRecord.model_validate(limit) if limit else None

    async def increment_daily_limit(
        self,
        limit_id: str,
        messages: int,
        tokens: int,
    ) -> DailyLimitRecord | None:
        async with self.db.session() as session:
            await session.execute(
                update(DailyLimit)
                .where(DailyLimit.id == limit_id)
                .values(
                    messages_used=DailyLimit.messages_used + messages,
                    tokens_used=DailyLimit.tokens_used + tokens,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            limit = await session.get(DailyLimit, limit_id, populate_existing=True)
            return DailyLimitRecord.model_validate(limit) if limit else None

    async def reset_daily_limits(self, before: date) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(DailyLimit)
                .where(DailyLimit.day < before)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
