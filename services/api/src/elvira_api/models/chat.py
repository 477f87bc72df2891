"""Chat request, response and stream event models."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .base import CamelModel

EventType = Literal["chunk", "message", "entries", "done", "error"]


class ChatEvent(BaseModel):
    """One server-sent event of a chat turn."""

    type: EventType
    data: Any = None
    msg_id: str | None = None
    item_catalogs: dict[str, str] | None = Field(
        default=None,
        serialization_alias="itemCatalogs",
    )

    def to_sse(self) -> str:
        """Render as an SSE ``data:`` frame."""
        return f"data: {self.model_dump_json(exclude_none=True, by_alias=True)}\n\n"


class StartChatRequest(CamelModel):
    """Request to start a new chat."""

    api_key: str | None = None
    entry_id: str | None = None
    catalog_id: str | None = None


class StartChatResponse(CamelModel):
    chat_id: str


class ResumeChatRequest(CamelModel):
    """Request to resume a persisted chat."""

    chat_id: str | None = None
    api_key: str | None = None
    entry_id: str | None = None
    catalog_id: str | None = None


class ResumeChatResponse(CamelModel):
    chat_id: str
    resumed: bool = True


class SendChatRequest(CamelModel):
    """A user message for a live chat."""

    chat_id: str | None = None
    message: str | None = None
    api_key: str | None = None
    entry_id: str | None = None
    catalog_id: str | None = None


class LastMessagePreview(CamelModel):
    sender: str
    text: str
    timestamp: datetime


class ChatSummary(CamelModel):
    """A chat as shown in a listing."""

    chat_id: str
    started_at: datetime
    title: str
    message_count: int
    total_tokens: int = 0
    last_message: LastMessagePreview | None = None


class ChatListResponse(CamelModel):
    chats: list[ChatSummary]
    total: int


class ChatHistoryResponse(CamelModel):
    """Full ordered message log of one chat."""

    chat_id: str
    messages: list[dict[str, Any]]
    message_count: int
