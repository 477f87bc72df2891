"""Pytest configuration and fixtures for API tests."""

from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chat_fakes import ALICE_KEY, FakeCatalog, FakeCompletionService, catalog_handler
from elvira_api.main import create_app
from elvira_api.services.catalog_client import CatalogClientFactory
from elvira_api.services.quota_governor import QuotaGovernor
from elvira_api.services.session_registry import SessionRegistry
from elvira_shared.config import (
    AgentSettings,
    CatalogSettings,
    LoggingSettings,
    QuotaSettings,
    Settings,
)
from elvira_shared.storage import LocalStorage


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def completions() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def fake_catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
async def local_storage() -> AsyncGenerator[LocalStorage, None]:
    storage = LocalStorage()
    await storage.init()
    yield storage
    await storage.close()


@pytest.fixture
def catalog_http() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(catalog_handler),
        base_url="http://catalog.test",
    )


# ============================================================================
# Application Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        catalog=CatalogSettings(base_url="http://catalog.test", retry_attempts=1),
        agent=AgentSettings(poll_interval=0.01, max_tool_rounds=4),
        quota=QuotaSettings(messages=5, tokens=1000),
        logging=LoggingSettings(level="DEBUG", json_format=False),
    )


@pytest.fixture
def app(settings, completions, catalog_http) -> FastAPI:
    """Create the application with in-memory collaborators.

    The lifespan skips real storage, OpenAI and network setup.
    """

    @asynccontextmanager
    async def test_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        storage = LocalStorage()
        await storage.init()
        app.state.storage = storage
        app.state.storage_initialized = True
        app.state.catalog_factory = CatalogClientFactory(settings.catalog, http=catalog_http)
        app.state.completions = completions
        app.state.governor = QuotaGovernor(storage, settings.quota)
        app.state.registry = SessionRegistry(storage, completions, settings.agent)
        yield
        await app.state.registry.drain()
        await app.state.catalog_factory.close()

    return create_app(settings, lifespan_handler=test_lifespan)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a synchronous test client."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def start_chat(client):
    """Start a chat for a key and return its id."""

    def _start(api_key: str = ALICE_KEY, **body: Any) -> str:
        response = client.post("/api/startchat", json={"apiKey": api_key, **body})
        assert response.status_code == 200, response.text
        return response.json()["chatId"]

    return _start


@pytest.fixture
def send_chat(client):
    """Post a message to ``/api/sendchat`` and return the response."""

    def _send(chat_id: str, message: str, api_key: str = ALICE_KEY, **body: Any):
        return client.post(
            "/api/sendchat",
            json={"chatId": chat_id, "message": message, "apiKey": api_key, **body},
        )

    return _send
