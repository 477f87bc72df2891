"""HTTP client for the remote Elvira catalog service.

One ``httpx.AsyncClient`` is shared by the whole app; each user gets a thin
:class:`CatalogClient` bound to their API key.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from elvira_shared.config import CatalogSettings
from elvira_shared.logging import get_logger

from ..errors import CatalogError

logger = get_logger(__name__)

ENTRIES_PATH = "/api/v1/entries"
ENTRY_DETAIL_PATH = "/api/v1/catalogs/{catalog_id}/entries/{entry_id}"
CURRENT_USER_PATH = "/api/v1/users/me"


class Catalog(Protocol):
    """Catalog capability used by the orchestrator's tools."""

    async def search(
        self,
        page: int = 1,
        limit: int = 25,
        filters: dict[str, Any] | None = None,
    ) -> Any: ...

    async def detail(self, entry_id: str, catalog_id: str) -> Any: ...


def _is_transient(exc: BaseException) -> bool:
    """Network failures and 5xx answers are worth another attempt."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class CatalogClient:
    """Catalog API access on behalf of one API key."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        retry_attempts: int = 3,
        retry_wait: float = 1.0,
    ):
        """Initialize the client.

        Args:
            http: Shared client with the catalog base URL configured.
            api_key: The user's catalog API key.
            retry_attempts: Attempts for idempotent reads.
            retry_wait: Back-off multiplier in seconds between attempts.
        """
        self.http = http
        self.api_key = api_key
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait

    def matches_key(self, api_key: str | None) -> bool:
        """Whether ``api_key`` is exactly the key this client was built with."""
        return api_key is not None and api_key == self.api_key

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=10),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    response = await self.http.get(
                        path,
                        params=params,
                        headers={"Authorization": f"Bearer {self.api_key}"},
                    )
                    response.raise_for_status()
                    return response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.warning("Catalog request failed", path=path, status_code=status_code)
            raise CatalogError(
                f"Catalog returned status {status_code} for {path}",
                status_code=status_code,
            ) from e
        except httpx.TimeoutException as e:
            logger.warning("Catalog request timed out", path=path)
            raise CatalogError(f"Catalog request timed out: {path}") from e
        except httpx.HTTPError as e:
            logger.warning("Catalog request error", path=path, error=str(e))
            raise CatalogError(f"Catalog request failed: {e}") from e
        except ValueError as e:
            logger.warning("Catalog returned a malformed body", path=path)
            raise CatalogError(f"Catalog returned invalid JSON for {path}") from e

    async def search(
        self,
        page: int = 1,
        limit: int = 25,
        filters: dict[str, Any] | None = None,
    ) -> Any:
        """List entries, sending only the filters that are set."""
        params: dict[str, Any] = {"page": page, "limit": limit, "pagination": "true"}
        for key, value in (filters or {}).items():
            if value is None:
                continue
            params[key] = str(value).lower() if isinstance(value, bool) else value
        return await self._get(ENTRIES_PATH, params=params)

    async def detail(self, entry_id: str, catalog_id: str) -> Any:
        """Fetch one entry from the catalog it belongs to."""
        if not entry_id:
            raise CatalogError("Entry ID is required")
        if not catalog_id:
            raise CatalogError("Catalog ID is required")
        return await self._get(
            ENTRY_DETAIL_PATH.format(catalog_id=catalog_id, entry_id=entry_id)
        )

    async def current_user(self) -> dict[str, Any]:
        """Identity of the API key's owner."""
        data = await self._get(CURRENT_USER_PATH)
        user = data.get("response") if isinstance(data, dict) else None
        if not isinstance(user, dict) or not user.get("id"):
            raise CatalogError("Invalid user response from catalog")
        return user


class CatalogClientFactory:
    """Builds per-key catalog clients over one shared connection pool."""

    def __init__(self, settings: CatalogSettings, http: httpx.AsyncClient | None = None):
        self.settings = settings
        self._http = http

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout,
                headers={"Accept": "application/json"},
            )
        return self._http

    def for_key(self, api_key: str) -> CatalogClient:
        return CatalogClient(
            self.http,
            api_key,
            retry_attempts=self.settings.retry_attempts,
        )

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
