"""Admin request and response models."""

from datetime import datetime
from typing import Any

from .base import CamelModel


class BlockUserRequest(CamelModel):
    """Block or unblock a user."""

    user_id: str
    blocked: bool = True
    reason: str | None = None
    until: datetime | None = None


class BlockUserResponse(CamelModel):
    user: dict[str, Any]
    terminated_sessions: list[str]


class UserListResponse(CamelModel):
    users: list[dict[str, Any]]
    total: int
    page: int
    limit: int


class ResetLimitsResponse(CamelModel):
    removed: int
    before: str


class SessionInfo(CamelModel):
    chat_id: str
    user_id: str
    queue_length: int
    state: str
    busy: bool


class SessionListResponse(CamelModel):
    active_count: int
    sessions: list[SessionInfo]
