"""Session Registry: live conversations and their event queues.

The registry owns the map from chat id to :class:`LiveSession`. Each live
session has an orchestrator, an append-only event list read by the
transport by index, and a lock that serializes turns.

Agent output is persisted by detached tasks. Writes for one chat are
chained so rows land in emission order, and every row gets a timestamp
strictly greater than the previous one in that chat. Once a session is
removed, anything its in-flight turn still produces is dropped.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from elvira_shared.config import AgentSettings
from elvira_shared.logging import get_logger
from elvira_shared.storage import MessageRecord, StoragePort, utcnow

from ..models.chat import ChatEvent
from .background import DetachedTasks
from .catalog_client import CatalogClient
from .llm_service import CompletionService
from .orchestrator import ConversationOrchestrator, assistant_turn, user_turn

logger = get_logger(__name__)

MSG_ID_PREFIX = "msg_"
CATALOGS_MARKER = "[Item Catalogs:"
DISPLAYED_MARKER = "[Displayed"
TIMESTAMP_STEP = timedelta(microseconds=1)


def display_summary(ids: list[str], catalogs: dict[str, str]) -> str:
    """Text stored (and replayed) for an item display."""
    catalog_info = json.dumps(catalogs, separators=(",", ":"))
    return (
        f"{DISPLAYED_MARKER} {len(ids)} item(s) with IDs: {', '.join(ids)}] "
        f"{CATALOGS_MARKER} {catalog_info}]"
    )


def with_display_metadata(
    text: str,
    item_ids: list[str] | None,
    item_catalogs: dict[str, str] | None,
) -> str:
    """Embed stored display metadata in a replayed message if it is missing."""
    if not item_ids or CATALOGS_MARKER in text:
        return text
    catalogs = item_catalogs or {}
    if DISPLAYED_MARKER in text:
        return f"{text} {CATALOGS_MARKER} {json.dumps(catalogs, separators=(',', ':'))}]"
    return f"{text}\n\n{display_summary(item_ids, catalogs)}"


def provider_message_id(message: MessageRecord) -> str:
    """Stored provider id, or one derived from the row id when unusable."""
    if message.msg_id and message.msg_id.startswith(MSG_ID_PREFIX):
        return message.msg_id
    return MSG_ID_PREFIX + message.id.replace("-", "")


@dataclass(eq=False)
class LiveSession:
    """In-memory state of one conversation."""

    chat_id: str
    user_id: str
    catalog: CatalogClient
    events: list[ChatEvent] = field(default_factory=list)
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at: datetime = field(default_factory=utcnow)
    last_timestamp: datetime | None = None
    closed: bool = False
    orchestrator: ConversationOrchestrator = field(init=False)

    def matches_key(self, api_key: str | None) -> bool:
        return self.catalog.matches_key(api_key)

    def next_timestamp(self) -> datetime:
        """Emission time, forced strictly after the previous row of this chat."""
        now = utcnow()
        if self.last_timestamp is not None and now <= self.last_timestamp:
            now = self.last_timestamp + TIMESTAMP_STEP
        self.last_timestamp = now
        return now


class _SessionListener:
    """Routes orchestrator output of one session into the registry."""

    def __init__(self, registry: SessionRegistry, session: LiveSession):
        self.registry = registry
        self.session = session

    def on_chunk(self, msg_id: str, chunk: str) -> None:
        self.registry._emit(self.session, ChatEvent(type="chunk", data=chunk, msg_id=msg_id))

    def on_message(self, text: str, msg_id: str | None) -> None:
        if self.registry._emit(self.session, ChatEvent(type="message", data=text, msg_id=msg_id)):
            self.registry._persist_agent(self.session, text, msg_id=msg_id)

    def on_entries(self, ids: list[str], catalogs: dict[str, str]) -> None:
        event = ChatEvent(type="entries", data=list(ids), item_catalogs=dict(catalogs))
        if self.registry._emit(self.session, event):
            self.registry._persist_agent(
                self.session,
                display_summary(ids, catalogs),
                item_ids=list(ids),
                item_catalogs=dict(catalogs),
            )


class SessionRegistry:
    """Creates, resumes and terminates live sessions."""

    def __init__(
        self,
        storage: StoragePort,
        completions: CompletionService,
        agent: AgentSettings,
    ):
        """Initialize the registry.

        Args:
            storage: Storage Port for chats and messages.
            completions: LLM capability handed to every orchestrator.
            agent: Assistant name and round cap.
        """
        self.storage = storage
        self.completions = completions
        self.agent = agent
        self.tasks = DetachedTasks()
        self._sessions: dict[str, LiveSession] = {}
        self._tails: dict[str, asyncio.Task[Any]] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _build(
        self,
        chat_id: str,
        user_id: str,
        catalog: CatalogClient,
        focus_item_id: str | None,
        focus_catalog_id: str | None,
    ) -> LiveSession:
        session = LiveSession(chat_id=chat_id, user_id=user_id, catalog=catalog)
        session.orchestrator = ConversationOrchestrator(
            self.completions,
            catalog,
            _SessionListener(self, session),
            agent_name=self.agent.name,
            max_rounds=self.agent.max_tool_rounds,
            focus_item_id=focus_item_id,
            focus_catalog_id=focus_catalog_id,
        )
        return session

    async def create(
        self,
        chat_id: str,
        user_id: str,
        catalog: CatalogClient,
        focus_item_id: str | None = None,
        focus_catalog_id: str | None = None,
    ) -> LiveSession:
        """Persist the chat (idempotently) and register a fresh session."""
        existing = self._sessions.get(chat_id)
        if existing is not None:
            return existing

        await self.storage.create_chat(chat_id, user_id)
        session = self._build(chat_id, user_id, catalog, focus_item_id, focus_catalog_id)
        self._sessions[chat_id] = session
        logger.info("Created chat session", chat_id=chat_id, user_id=user_id)
        return session

    async def resume(
        self,
        chat_id: str,
        user_id: str,
        catalog: CatalogClient,
        focus_item_id: str | None = None,
        focus_catalog_id: str | None = None,
    ) -> LiveSession:
        """Return the live session, or rebuild it from the persisted log."""
        existing = self._sessions.get(chat_id)
        if existing is not None:
            logger.debug("Chat session already live", chat_id=chat_id)
            return existing

        await self.storage.create_chat(chat_id, user_id)
        session = self._build(chat_id, user_id, catalog, focus_item_id, focus_catalog_id)
        messages = await self.storage.list_messages(chat_id)
        self._replay(session, messages)

        # Another resume may have won while history was loading.
        existing = self._sessions.get(chat_id)
        if existing is not None:
            return existing

        self._sessions[chat_id] = session
        logger.info(
            "Resumed chat session",
            chat_id=chat_id,
            user_id=user_id,
            messages=len(messages),
        )
        return session

    def _replay(self, session: LiveSession, messages: list[MessageRecord]) -> None:
        transcript = session.orchestrator.transcript
        for message in messages:
            if message.sender == "user":
                transcript.append(user_turn(message.text))
                continue

            text = with_display_metadata(message.text, message.item_ids, message.item_catalogs)
            transcript.append(assistant_turn(provider_message_id(message), text))
            if message.item_ids:
                catalogs = dict(message.item_catalogs or {})
                session.orchestrator.tools.remember(catalogs)
                session.events.append(
                    ChatEvent(type="entries", data=list(message.item_ids), item_catalogs=catalogs)
                )

        if messages:
            session.last_timestamp = messages[-1].timestamp

    async def remove(self, chat_id: str) -> bool:
        """Drop the live session and purge the chat's persisted messages."""
        session = self._sessions.pop(chat_id, None)
        if session is not None:
            session.closed = True
        await self.flush(chat_id)
        await self.storage.clear_messages(chat_id)
        logger.info("Removed chat session", chat_id=chat_id, was_live=session is not None)
        return session is not None

    async def terminate_for_user(self, user_id: str) -> list[str]:
        """Drop every live session of a user. Persisted history is kept."""
        terminated = []
        for chat_id, session in list(self._sessions.items()):
            if session.user_id != user_id:
                continue
            self._sessions.pop(chat_id, None)
            session.closed = True
            terminated.append(chat_id)

        if terminated:
            logger.info("Terminated user sessions", user_id=user_id, chat_ids=terminated)
        return terminated

    async def drain(self) -> None:
        """Wait for outstanding persistence; used on shutdown."""
        await self.tasks.drain()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, chat_id: str) -> LiveSession | None:
        return self._sessions.get(chat_id)

    def has_session(self, chat_id: str) -> bool:
        return chat_id in self._sessions

    def queue_length(self, chat_id: str) -> int:
        session = self._sessions.get(chat_id)
        return len(session.events) if session else 0

    def event_at(self, chat_id: str, index: int) -> ChatEvent | None:
        session = self._sessions.get(chat_id)
        if session is None or not 0 <= index < len(session.events):
            return None
        return session.events[index]

    def session_ids_for_user(self, user_id: str) -> list[str]:
        return [chat_id for chat_id, s in self._sessions.items() if s.user_id == user_id]

    def active_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[LiveSession]:
        return list(self._sessions.values())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def log_user_message(
        self,
        session: LiveSession,
        text: str,
        entry_id: str | None = None,
        catalog_id: str | None = None,
    ) -> None:
        """Persist a user message in order with the agent rows; failures are logged."""
        task = self._chain(
            session,
            sender="user",
            text=text,
            user_id=session.user_id,
            entry_id=entry_id,
            catalog_id=catalog_id,
        )
        await asyncio.wait([task])

    def _emit(self, session: LiveSession, event: ChatEvent) -> bool:
        """Enqueue an event if the session is still registered."""
        if session.closed or self._sessions.get(session.chat_id) is not session:
            logger.debug("Dropped event for closed session", chat_id=session.chat_id, type=event.type)
            return False
        session.events.append(event)
        return True

    def _persist_agent(self, session: LiveSession, text: str, **fields: Any) -> None:
        focus = session.orchestrator.focus
        self._chain(
            session,
            sender="agent",
            text=text,
            user_id=session.user_id,
            entry_id=focus.item_id,
            catalog_id=focus.catalog_id,
            **fields,
        )

    def _chain(self, session: LiveSession, **fields: Any) -> asyncio.Task[Any]:
        chat_id = session.chat_id
        timestamp = session.next_timestamp()
        previous = self._tails.get(chat_id)

        async def write() -> None:
            if previous is not None:
                await asyncio.wait([previous])
            await self.storage.append_message(chat_id, timestamp=timestamp, **fields)

        task = self.tasks.spawn(write(), chat_id=chat_id, sender=fields.get("sender"))
        self._tails[chat_id] = task

        def _clear_tail(finished: asyncio.Task[Any]) -> None:
            if self._tails.get(chat_id) is finished:
                del self._tails[chat_id]

        task.add_done_callback(_clear_tail)
        return task

    async def flush(self, chat_id: str) -> None:
        """Wait until every queued write of a chat has landed."""
        tail = self._tails.get(chat_id)
        if tail is not None:
            await asyncio.wait([tail])
