"""Pydantic model modules for the API."""

from .admin import (
    BlockUserRequest,
    BlockUserResponse,
    ResetLimitsResponse,
    SessionInfo,
    SessionListResponse,
    UserListResponse,
)
from .base import CamelModel, ErrorResponse
from .chat import (
    ChatEvent,
    ChatHistoryResponse,
    ChatListResponse,
    ChatSummary,
    LastMessagePreview,
    ResumeChatRequest,
    ResumeChatResponse,
    SendChatRequest,
    StartChatRequest,
    StartChatResponse,
)

__all__ = [
    # Base
    "CamelModel",
    "ErrorResponse",
    # Chat
    "ChatEvent",
    "ChatHistoryResponse",
    "ChatListResponse",
    "ChatSummary",
    "LastMessagePreview",
    "ResumeChatRequest",
    "ResumeChatResponse",
    "SendChatRequest",
    "StartChatRequest",
    "StartChatResponse",
    # Admin
    "BlockUserRequest",
    "BlockUserResponse",
    "ResetLimitsResponse",
    "SessionInfo",
    "SessionListResponse",
    "UserListResponse",
]
