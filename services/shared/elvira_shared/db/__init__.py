"""Shared database module."""

from .connection import (
    DatabaseConnection,
    create_engine,
    create_session_factory,
    normalize_database_url,
)
from .models import (
    Base,
    Chat,
    DailyLimit,
    Message,
    TimestampMixin,
    User,
    generate_id,
)

__all__ = [
    "Base",
    "Chat",
    "DailyLimit",
    "DatabaseConnection",
    "Message",
    "TimestampMixin",
    "User",
    "create_engine",
    "create_session_factory",
    "generate_id",
    "normalize_database_url",
]
