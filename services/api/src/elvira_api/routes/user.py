"""User-facing chat history and usage routes."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from elvira_shared.logging import get_logger
from elvira_shared.storage import ChatRecord, MessageRecord, StoragePort

from ..dependencies.auth import AuthenticatedUser, require_user
from ..dependencies.services import get_governor, get_registry, get_storage
from ..errors import NotFoundError
from ..models.chat import ChatHistoryResponse, ChatListResponse, ChatSummary, LastMessagePreview

router = APIRouter(prefix="/user", tags=["User"])
logger = get_logger(__name__)

TITLE_LENGTH = 50
PREVIEW_LENGTH = 100
DEFAULT_TITLE = "New Chat"


def chat_title(chat: ChatRecord, messages: list[MessageRecord]) -> str:
    """Stored title, else the opening of the first user message."""
    if chat.title:
        return chat.title
    first = next((m for m in messages if m.sender == "user" and m.text), None)
    return first.text[:TITLE_LENGTH] if first else DEFAULT_TITLE


def summarize_chat(chat: ChatRecord, messages: list[MessageRecord]) -> ChatSummary:
    last = messages[-1] if messages else None
    return ChatSummary(
        chat_id=chat.id,
        started_at=chat.started_at,
        title=chat_title(chat, messages),
        message_count=len(messages),
        total_tokens=chat.total_tokens,
        last_message=(
            LastMessagePreview(
                sender=last.sender,
                text=last.text[:PREVIEW_LENGTH],
                timestamp=last.timestamp,
            )
            if last
            else None
        ),
    )


async def list_chat_summaries(storage: StoragePort, user_id: str) -> ChatListResponse:
    """Chats of ``user_id``, most recent first."""
    chats = await storage.list_chats_by_user(user_id)
    summaries = []
    for chat in chats:
        messages = await storage.list_messages(chat.id)
        summaries.append(summarize_chat(chat, messages))
    return ChatListResponse(chats=summaries, total=len(summaries))


async def load_chat_history(storage: StoragePort, user_id: str, chat_id: str) -> ChatHistoryResponse:
    """Full log of a chat owned by ``user_id``.

    Raises:
        NotFoundError: The chat does not exist or belongs to someone else.
    """
    chat = await storage.get_chat(chat_id)
    if chat is None or chat.user_id != user_id:
        raise NotFoundError("Chat not found")

    messages = await storage.list_messages(chat_id)
    return ChatHistoryResponse(
        chat_id=chat_id,
        messages=[m.to_dict() for m in messages],
        message_count=len(messages),
    )


@router.get(
    "/chats",
    response_model=ChatListResponse,
    summary="List My Chats",
)
async def list_my_chats(
    request: Request,
    auth: AuthenticatedUser = Depends(require_user),
) -> ChatListResponse:
    return await list_chat_summaries(get_storage(request), auth.id)


@router.get(
    "/chats/{chat_id}",
    response_model=ChatHistoryResponse,
    summary="Get Chat History",
)
async def get_my_chat(
    chat_id: str,
    request: Request,
    auth: AuthenticatedUser = Depends(require_user),
) -> ChatHistoryResponse:
    return await load_chat_history(get_storage(request), auth.id, chat_id)


@router.delete(
    "/chats/{chat_id}/messages",
    summary="Forget Chat",
    description="Terminate the live session and delete every message of the chat",
)
async def forget_chat(
    chat_id: str,
    request: Request,
    auth: AuthenticatedUser = Depends(require_user),
) -> dict[str, Any]:
    chat = await get_storage(request).get_chat(chat_id)
    if chat is None or chat.user_id != auth.id:
        raise NotFoundError("Chat not found")

    was_live = await get_registry(request).remove(chat_id)
    logger.info("User cleared chat", chat_id=chat_id, user_id=auth.id)
    return {"chatId": chat_id, "cleared": True, "wasLive": was_live}


@router.get(
    "/usage",
    summary="Daily Usage",
    description="Messages and tokens used in the current quota day",
)
async def get_my_usage(
    request: Request,
    auth: AuthenticatedUser = Depends(require_user),
) -> dict[str, Any]:
    return await get_governor(request).get_daily_usage(auth.id)
