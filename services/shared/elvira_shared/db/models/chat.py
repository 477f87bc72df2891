"""Chat and Message SQLAlchemy models for persisted conversations."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, generate_id


class Chat(Base, TimestampMixin):
    """A conversation owned by one user.

    The running aggregates are updated on every message append so that
    chat listings do not need to scan the message log.
    """

    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_chats_user_started", "user_id", "started_at"),
    )


class Message(Base):
    """One append-only entry of a chat's message log."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    chat_id: Mapped[str] = mapped_column(
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sender: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="Sender role: 'user' or 'agent'",
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    entry_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    catalog_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Provider-assigned output item id ("msg_..."), required on replay
    msg_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Items shown by a display call, with the catalog each one belongs to
    item_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    item_catalogs: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_messages_chat_timestamp", "chat_id", "timestamp"),
        Index("ix_messages_user", "user_id"),
    )
