"""Superuser routes: user moderation, chat inspection, quota and sessions."""

from fastapi import APIRouter, Depends, Query, Request

from elvira_shared.logging import get_logger

from ..dependencies.auth import AuthenticatedUser, require_superuser
from ..dependencies.services import get_governor, get_registry, get_storage
from ..errors import NotFoundError
from ..models.admin import (
    BlockUserRequest,
    BlockUserResponse,
    ResetLimitsResponse,
    SessionInfo,
    SessionListResponse,
    UserListResponse,
)
from ..models.chat import ChatHistoryResponse, ChatListResponse
from .user import list_chat_summaries, load_chat_history

router = APIRouter(prefix="/admin", tags=["Admin"])
logger = get_logger(__name__)


# --- Users ---


@router.get("/users", response_model=UserListResponse, summary="List Users")
async def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_superuser),
) -> UserListResponse:
    result = await get_storage(request).get_users_paginated(page=page, limit=limit)
    return UserListResponse(
        users=[user.to_dict() for user in result.users],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )


@router.get(
    "/users/{user_id}/chats",
    response_model=ChatListResponse,
    summary="List User Chats",
)
async def list_user_chats(
    user_id: str,
    request: Request,
    admin: AuthenticatedUser = Depends(require_superuser),
) -> ChatListResponse:
    storage = get_storage(request)
    if await storage.get_user(user_id) is None:
        raise NotFoundError("User not found")
    return await list_chat_summaries(storage, user_id)


@router.get(
    "/users/{user_id}/chats/{chat_id}",
    response_model=ChatHistoryResponse,
    summary="Get User Chat",
)
async def get_user_chat(
    user_id: str,
    chat_id: str,
    request: Request,
    admin: AuthenticatedUser = Depends(require_superuser),
) -> ChatHistoryResponse:
    return await load_chat_history(get_storage(request), user_id, chat_id)


@router.post("/users/block", response_model=BlockUserResponse, summary="Block or Unblock User")
async def block_user(
    body: BlockUserRequest,
    request: Request,
    admin: AuthenticatedUser = Depends(require_superuser),
) -> BlockUserResponse:
    """Set a user's block state. Blocking terminates their live sessions."""
    user = await get_storage(request).set_user_blocked(
        body.user_id,
        body.blocked,
        reason=body.reason,
        until=body.until,
    )
    if user is None:
        raise NotFoundError("User not found")

    terminated: list[str] = []
    if body.blocked:
        terminated = await get_registry(request).terminate_for_user(body.user_id)

    logger.info(
        "User block state changed",
        user_id=body.user_id,
        blocked=body.blocked,
        until=body.until.isoformat() if body.until else None,
        admin_id=admin.id,
        terminated_sessions=len(terminated),
    )
    return BlockUserResponse(user=user.to_dict(), terminated_sessions=terminated)


# --- Quota ---


@router.post("/limits/reset", response_model=ResetLimitsResponse, summary="Reset Expired Limits")
async def reset_limits(
    request: Request,
    admin: AuthenticatedUser = Depends(require_superuser),
) -> ResetLimitsResponse:
    governor = get_governor(request)
    removed = await governor.reset_expired_daily_limits()
    return ResetLimitsResponse(removed=removed, before=governor.today().isoformat())


# --- Sessions ---


@router.get("/sessions", response_model=SessionListResponse, summary="List Live Sessions")
async def list_sessions(
    request: Request,
    admin: AuthenticatedUser = Depends(require_superuser),
) -> SessionListResponse:
    registry = get_registry(request)
    sessions = [
        SessionInfo(
            chat_id=session.chat_id,
            user_id=session.user_id,
            queue_length=len(session.events),
            state=session.orchestrator.state.value,
            busy=session.turn_lock.locked(),
        )
        for session in registry.sessions()
    ]
    return SessionListResponse(active_count=len(sessions), sessions=sessions)
