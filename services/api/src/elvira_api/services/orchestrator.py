"""Conversation Orchestrator: drives one user turn against the LLM.

A turn moves through ``IDLE → STREAMING → (TOOL_PENDING → STREAMING)* →
COMPLETED | FAILED``. Each STREAMING round sends the whole transcript, the
system instructions for the current focus and the tool declarations. Rounds
continue while the model asks for tools, up to ``max_rounds``.

Usage:
    orchestrator = ConversationOrchestrator(completions, catalog, listener)
    orchestrator.set_focus("entry-1", "catalog-7")
    usage = await orchestrator.chat("Tell me about this book")
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from elvira_shared.logging import get_logger

from ..errors import ToolLoopLimitError, UpstreamStreamError
from .catalog_client import Catalog
from .llm_service import Completion, CompletionService, TextDelta, TokenUsage
from .tools import TOOL_DECLARATIONS, Focus, ToolExecutor

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are {name}, a helpful catalog assistant. Your role is to guide the user in exploring catalog entries, summarizing them, and making relevant recommendations.

When recommending entries, use the display_items tool. Always keep the message short and brief, answer only what was asked.

Focus Entry Id: {item_id}
Focus Catalog Id: {catalog_id}

If a focus entry is provided:
    Focus your responses on that specific entry and its related content.
    Continue discussing it unless the user explicitly dismisses or changes the topic.

You have access to the following tools:
    get_item_detail - Retrieve detailed information about a specific entry by its ID and catalog ID.
    list_items - Browse entries with pagination and filters.
    display_items - Show entries in the UI by ID, each with its catalog ID. Always send a helpful message alongside the displayed results.

Every entry belongs to a catalog. Keep track of each entry's catalog_id from list results and earlier displays, and pass it on when asking for details.

Use the tools only when needed, and always make your explanations clear, concise, and user-friendly.

When the user asks for anything not related to the catalog, respond politely that you are here to help with catalog-related inquiries only.
Don't mention anything about AI or language models. Don't help with coding or technical questions.
You may respond with markdown formatting for better readability."""


class TurnState(str, Enum):
    """Lifecycle of one user turn."""

    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ConversationListener(Protocol):
    """Receives orchestrator output as it happens."""

    def on_chunk(self, msg_id: str, chunk: str) -> None:
        """A text delta for the output item ``msg_id``."""
        ...

    def on_message(self, text: str, msg_id: str | None) -> None:
        """A finished assistant message."""
        ...

    def on_entries(self, ids: list[str], catalogs: dict[str, str]) -> None:
        """Entries the model chose to display."""
        ...


def user_turn(text: str) -> dict[str, Any]:
    return {"role": "user", "content": [{"type": "input_text", "text": text}]}


def assistant_turn(msg_id: str, text: str) -> dict[str, Any]:
    return {
        "type": "message",
        "id": msg_id,
        "role": "assistant",
        "status": "completed",
        "content": [{"type": "output_text", "text": text, "annotations": []}],
    }


def message_text(item: dict[str, Any]) -> str:
    """Concatenate the text parts of an output ``message`` item."""
    parts = []
    for content in item.get("content") or []:
        if content.get("type") == "output_text":
            parts.append(content.get("text", ""))
        elif content.get("type") == "refusal":
            parts.append(content.get("refusal", ""))
    return "".join(parts)


class ConversationOrchestrator:
    """Runs tool-augmented completion rounds over one transcript."""

    def __init__(
        self,
        completions: CompletionService,
        catalog: Catalog,
        listener: ConversationListener,
        *,
        agent_name: str = "Elvira",
        max_rounds: int = 16,
        focus_item_id: str | None = None,
        focus_catalog_id: str | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            completions: LLM capability.
            catalog: Catalog capability used by the tools.
            listener: Receives chunks, messages and entry displays.
            agent_name: Assistant name used in the instructions.
            max_rounds: Completion rounds allowed per turn; 0 means no cap.
            focus_item_id: Initial focus entry.
            focus_catalog_id: Catalog of the focus entry.
        """
        self.completions = completions
        self.listener = listener
        self.agent_name = agent_name
        self.max_rounds = max_rounds
        self.transcript: list[dict[str, Any]] = []
        self.state = TurnState.IDLE
        self.turn_usage = TokenUsage()
        self.total_usage = TokenUsage()
        self.rounds = 0
        self.tools = ToolExecutor(catalog, listener.on_entries)
        self.set_focus(focus_item_id, focus_catalog_id)

    @property
    def focus(self) -> Focus:
        return self.tools.focus

    def set_focus(self, item_id: str | None, catalog_id: str | None = None) -> None:
        """Change the focus for future rounds; the transcript is untouched."""
        self.tools.focus = Focus(item_id=item_id, catalog_id=catalog_id)

    def instructions(self) -> str:
        return SYSTEM_PROMPT.format(
            name=self.agent_name,
            item_id=self.focus.item_id or "none",
            catalog_id=self.focus.catalog_id or "none",
        )

    async def chat(self, text: str) -> TokenUsage:
        """Process one user message to completion.

        Returns:
            Token usage of this turn.

        Raises:
            UpstreamStreamError: The completion service failed, or the turn
                exceeded ``max_rounds``. Output received before the failure
                stays in the transcript.
        """
        self.state = TurnState.IDLE
        self.turn_usage = TokenUsage()
        self.rounds = 0
        self.transcript.append(user_turn(text))

        try:
            while True:
                if self.max_rounds and self.rounds >= self.max_rounds:
                    raise ToolLoopLimitError(
                        f"Turn exceeded {self.max_rounds} completion rounds"
                    )
                self.rounds += 1
                self.state = TurnState.STREAMING
                output = await self._complete_round()

                calls = self._dispatch_output(output)
                if not calls:
                    self.state = TurnState.COMPLETED
                    return self.turn_usage

                self.state = TurnState.TOOL_PENDING
                for call in calls:
                    self.transcript.append(await self.tools.execute(call))
        except Exception:
            self.state = TurnState.FAILED
            raise

    async def _complete_round(self) -> list[dict[str, Any]]:
        completion: Completion | None = None
        async for event in self.completions.stream(
            list(self.transcript),
            self.instructions(),
            TOOL_DECLARATIONS,
        ):
            if isinstance(event, TextDelta):
                self.listener.on_chunk(event.item_id, event.delta)
            elif isinstance(event, Completion):
                completion = event

        if completion is None:
            raise UpstreamStreamError("Completion stream ended without a response")

        self.turn_usage.add(completion.usage)
        self.total_usage.add(completion.usage)
        self.transcript.extend(completion.output)
        return completion.output

    def _dispatch_output(self, output: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Forward messages and collect tool calls, in output order."""
        calls: list[dict[str, Any]] = []
        for item in output:
            item_type = item.get("type")
            if item_type == "message":
                self.listener.on_message(message_text(item), item.get("id"))
            elif item_type == "function_call":
                calls.append(item)
            else:
                logger.debug("Ignoring output item", item_type=item_type)
        return calls
