"""Pytest configuration and fixtures for shared package tests."""

from collections.abc import AsyncGenerator

import pytest

from elvira_shared.db.connection import DatabaseConnection
from elvira_shared.storage import LocalStorage, RelationalStorage, StoragePort, UserRecord


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture(params=["local", "sqlite"])
async def storage(request) -> AsyncGenerator[StoragePort, None]:
    """Run each storage test against both adapters."""
    if request.param == "local":
        store: StoragePort = LocalStorage()
    else:
        store = RelationalStorage(DatabaseConnection("sqlite+aiosqlite:///:memory:"))
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def alice() -> UserRecord:
    """A plain catalog user."""
    return UserRecord(
        id="u-alice",
        username="alice",
        name="Alice",
        surname="Liddell",
        permissions=["read"],
        catalog_permissions={"cat-1": "read"},
    )


@pytest.fixture
def bob() -> UserRecord:
    """A second catalog user."""
    return UserRecord(id="u-bob", username="bob", name="Bob", surname="Stone")
