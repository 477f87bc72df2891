"""Storage Port and its adapters."""

from ..config import DatabaseSettings
from ..db.connection import DatabaseConnection
from .local import LocalStorage
from .port import (
    ChatRecord,
    DailyLimitRecord,
    MessageRecord,
    Record,
    Sender,
    StorageError,
    StoragePort,
    UserPage,
    UserRecord,
    utcnow,
)
from .relational import RelationalStorage


def create_storage(settings: DatabaseSettings) -> StoragePort:
    """Build the storage adapter selected by ``settings.storage``."""
    if settings.storage == "local":
        return LocalStorage(settings.json_path or None)

    db = DatabaseConnection(
        url=settings.effective_url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        echo=settings.echo,
    )
    return RelationalStorage(db)


__all__ = [
    "ChatRecord",
    "DailyLimitRecord",
    "LocalStorage",
    "MessageRecord",
    "Record",
    "RelationalStorage",
    "Sender",
    "StorageError",
    "StoragePort",
    "UserPage",
    "UserRecord",
    "create_storage",
    "utcnow",
]
