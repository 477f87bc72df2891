"""API key authentication against the catalog identity endpoint."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Request

from elvira_shared.logging import get_logger
from elvira_shared.storage import UserRecord, utcnow

from ..errors import AuthError, AuthorizationError, CatalogError
from ..services.catalog_client import CatalogClient
from .services import get_catalog_factory, get_registry, get_storage

logger = get_logger(__name__)


@dataclass
class AuthenticatedUser:
    """A caller whose API key the catalog vouched for."""

    user: UserRecord
    api_key: str
    catalog: CatalogClient

    @property
    def id(self) -> str:
        return self.user.id


def extract_api_key(request: Request, body_key: str | None = None) -> str | None:
    """Find the API key: bearer header, X-API-Key, ``apiKey`` query, then body."""
    authorization = request.headers.get("authorization")
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[len("bearer "):].strip()
        if token:
            return token

    header_key = request.headers.get("x-api-key")
    if header_key:
        return header_key

    query_key = request.query_params.get("apiKey")
    if query_key:
        return query_key

    return body_key or None


async def authenticate(request: Request, api_key: str | None) -> AuthenticatedUser:
    """Verify ``api_key`` with the catalog and refresh the local user.

    Raises:
        AuthError: The key is missing or the catalog rejects it.
        AuthorizationError: The user is blocked. Their live sessions are
            terminated first.
    """
    if not api_key:
        raise AuthError("API key required")

    catalog = get_catalog_factory(request).for_key(api_key)
    try:
        profile = await catalog.current_user()
    except CatalogError as e:
        logger.warning("API key verification failed", status_code=e.status_code, error=str(e))
        raise AuthError("Invalid API key or unable to verify user") from e

    user = await get_storage(request).upsert_user(UserRecord.from_profile(profile))
    if user.is_blocked_at(utcnow()):
        await get_registry(request).terminate_for_user(user.id)
        logger.warning("Blocked user attempted access", user_id=user.id)
        raise AuthorizationError("User is blocked", reason=user.blocked_reason)

    return AuthenticatedUser(user=user, api_key=api_key, catalog=catalog)


async def require_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency for routes that take the key from headers or query.

    Usage:
        @router.get("/chats")
        async def list_chats(auth: AuthenticatedUser = Depends(require_user)):
            ...
    """
    return await authenticate(request, extract_api_key(request))


async def require_superuser(
    auth: AuthenticatedUser = Depends(require_user),
) -> AuthenticatedUser:
    """FastAPI dependency that additionally requires the superuser flag."""
    if not auth.user.is_superuser:
        raise AuthorizationError("Forbidden - superuser required")
    return auth
