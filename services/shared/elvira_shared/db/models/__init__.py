"""SQLAlchemy database models for the Elvira agent."""

from .base import Base, TimestampMixin, generate_id
from .chat import Chat, Message
from .daily_limit import DailyLimit
from .user import User

__all__ = [
    "Base",
    "Chat",
    "DailyLimit",
    "Message",
    "TimestampMixin",
    "User",
    "generate_id",
]
