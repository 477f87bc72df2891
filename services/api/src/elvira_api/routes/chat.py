"""Chat API routes: start, resume and stream a conversation turn."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from elvira_shared.logging import get_logger

from ..dependencies.auth import authenticate, extract_api_key
from ..dependencies.services import get_app_settings, get_governor, get_registry, get_storage
from ..errors import (
    AuthError,
    AuthorizationError,
    BadRequestError,
    NotFoundError,
    QuotaExceededError,
)
from ..models.chat import (
    ChatEvent,
    ResumeChatRequest,
    ResumeChatResponse,
    SendChatRequest,
    StartChatRequest,
    StartChatResponse,
)
from ..services.quota_governor import QuotaGovernor, UsageCheck
from ..services.session_registry import LiveSession, SessionRegistry

router = APIRouter(prefix="/api", tags=["Chat"])
logger = get_logger(__name__)

TURN_ERROR_MESSAGE = "An error occurred"

# Turns keep running after a client disconnects; hold a reference until done.
_running_turns: set[asyncio.Task[Any]] = set()


def _quota_error(check: UsageCheck, message: str) -> QuotaExceededError:
    return QuotaExceededError(
        message,
        remaining=check.remaining,
        limit=check.limit,
        reset_at=check.reset_at.isoformat(),
    )


@router.post(
    "/startchat",
    response_model=StartChatResponse,
    summary="Start Chat",
    description="Create a new chat, optionally focused on a catalog entry",
)
async def start_chat(
    request: Request,
    body: StartChatRequest | None = None,
) -> StartChatResponse:
    body = body or StartChatRequest()
    if body.entry_id and not body.catalog_id:
        raise BadRequestError("catalogId is required when entryId is provided")

    auth = await authenticate(request, extract_api_key(request, body.api_key))

    chat_id = str(uuid4())
    await get_registry(request).create(
        chat_id,
        auth.id,
        auth.catalog,
        focus_item_id=body.entry_id,
        focus_catalog_id=body.catalog_id,
    )
    return StartChatResponse(chat_id=chat_id)


@router.post(
    "/resumechat",
    response_model=ResumeChatResponse,
    summary="Resume Chat",
    description="Rebuild a live session from a persisted chat owned by the caller",
)
async def resume_chat(
    request: Request,
    body: ResumeChatRequest | None = None,
) -> ResumeChatResponse:
    body = body or ResumeChatRequest()
    if not body.chat_id:
        raise BadRequestError("chatId is required")

    auth = await authenticate(request, extract_api_key(request, body.api_key))

    chat = await get_storage(request).get_chat(body.chat_id)
    if chat is None or chat.user_id != auth.id:
        raise NotFoundError("Chat not found")

    await get_registry(request).resume(
        body.chat_id,
        auth.id,
        auth.catalog,
        focus_item_id=body.entry_id,
        focus_catalog_id=body.catalog_id,
    )
    return ResumeChatResponse(chat_id=body.chat_id)


@router.post(
    "/sendchat",
    summary="Send Chat Message",
    description="Process one user message and stream the turn as server-sent events",
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def send_chat(
    request: Request,
    body: SendChatRequest | None = None,
) -> StreamingResponse:
    body = body or SendChatRequest()
    if not body.chat_id or not body.message:
        raise BadRequestError("chatId and message are required")

    api_key = extract_api_key(request, body.api_key)
    if not api_key:
        raise AuthError("API key required")

    registry = get_registry(request)
    storage = get_storage(request)
    governor = get_governor(request)

    session = registry.get(body.chat_id)
    if session is None:
        raise NotFoundError("Chat session not found")

    if await storage.is_user_blocked(session.user_id):
        await registry.terminate_for_user(session.user_id)
        raise AuthorizationError("User is blocked")

    if not session.matches_key(api_key):
        raise AuthError("Invalid API key")

    token_check = await governor.check_token_quota(session.user_id)
    if token_check.remaining <= 0:
        raise _quota_error(token_check, "Daily token limit exceeded")

    message_check = await governor.check_message_quota(session.user_id)
    if not message_check.allowed:
        raise _quota_error(message_check, "Daily message limit exceeded")

    usage = await governor.record_usage(session.user_id, body.message)
    if not usage.allowed:
        raise _quota_error(usage, "Daily message limit exceeded")

    if body.entry_id:
        session.orchestrator.set_focus(
            body.entry_id,
            body.catalog_id or session.orchestrator.focus.catalog_id,
        )

    await storage.touch_user(session.user_id)
    await registry.log_user_message(
        session,
        body.message,
        entry_id=body.entry_id,
        catalog_id=body.catalog_id,
    )

    poll_interval = get_app_settings(request).agent.poll_interval
    return StreamingResponse(
        _stream_turn(registry, governor, session, body.message, poll_interval),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _run_turn(
    registry: SessionRegistry,
    governor: QuotaGovernor,
    session: LiveSession,
    message: str,
    started: asyncio.Future[int],
) -> str | None:
    """Run one turn under the session lock; return an error message on failure."""
    async with session.turn_lock:
        started.set_result(registry.queue_length(session.chat_id))
        orchestrator = session.orchestrator
        error = None
        try:
            await orchestrator.chat(message)
        except Exception as e:
            logger.exception(
                "Chat turn failed",
                chat_id=session.chat_id,
                user_id=session.user_id,
                error_type=type(e).__name__,
            )
            error = TURN_ERROR_MESSAGE

        await registry.flush(session.chat_id)

        tokens = orchestrator.turn_usage.total_tokens
        if tokens:
            try:
                await governor.record_tokens(session.user_id, tokens)
                await registry.storage.record_chat_tokens(session.chat_id, tokens)
            except Exception:
                logger.exception(
                    "Failed to record turn tokens",
                    chat_id=session.chat_id,
                    tokens=tokens,
                )

        logger.info(
            "Chat turn finished",
            chat_id=session.chat_id,
            state=orchestrator.state.value,
            rounds=orchestrator.rounds,
            **orchestrator.turn_usage.to_dict(),
        )
        return error


async def _stream_turn(
    registry: SessionRegistry,
    governor: QuotaGovernor,
    session: LiveSession,
    message: str,
    poll_interval: float,
) -> AsyncIterator[str]:
    """Start the turn and relay new queue events until it finishes."""
    started: asyncio.Future[int] = asyncio.get_running_loop().create_future()
    task = asyncio.create_task(_run_turn(registry, governor, session, message, started))
    _running_turns.add(task)
    task.add_done_callback(_running_turns.discard)

    cursor = await started
    while True:
        finished = task.done()
        while cursor < registry.queue_length(session.chat_id):
            event = registry.event_at(session.chat_id, cursor)
            if event is not None:
                yield event.to_sse()
            cursor += 1
        if finished:
            break
        await asyncio.sleep(poll_interval)

    error = task.result()
    if error is not None:
        yield ChatEvent(type="error", data=error).to_sse()
    else:
        yield ChatEvent(type="done").to_sse()
