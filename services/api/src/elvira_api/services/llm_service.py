"""LLM completion service on the OpenAI Responses API.

Provides streaming completions for the conversation orchestrator. A stream
yields :class:`TextDelta` events while text is generated and ends with a
single :class:`Completion` carrying the output items and token usage.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from elvira_shared.config import OpenAISettings
from elvira_shared.logging import get_logger

from ..errors import UpstreamStreamError

logger = get_logger(__name__)


@dataclass
class TokenUsage:
    """Token counts reported by the completion service."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens

    @classmethod
    def from_usage(cls, usage: Any) -> TokenUsage:
        if usage is None:
            return cls()
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        total_tokens = getattr(usage, "total_tokens", 0) or (input_tokens + output_tokens)
        return cls(input_tokens, output_tokens, total_tokens)

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class TextDelta:
    """A fragment of generated text for one output item."""

    item_id: str
    delta: str


@dataclass
class Completion:
    """The finished round: output items in order, plus usage."""

    output: list[dict[str, Any]]
    usage: TokenUsage = field(default_factory=TokenUsage)


StreamEvent = TextDelta | Completion


class CompletionService(Protocol):
    """LLM capability: stream one completion round for a transcript."""

    def stream(
        self,
        transcript: list[dict[str, Any]],
        instructions: str,
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[StreamEvent]: ...


class OpenAICompletionService:
    """Streams Responses API completions."""

    def __init__(self, settings: OpenAISettings, client: AsyncOpenAI | None = None):
        """Initialize the service.

        Args:
            settings: Model, key and verbosity.
            client: Pre-built client; created lazily when omitted.
        """
        self.settings = settings
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """Get or create the OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.api_key or None)
        return self._client

    async def stream(
        self,
        transcript: list[dict[str, Any]],
        instructions: str,
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[StreamEvent]:
        try:
            response_stream = await self.client.responses.create(
                model=self.settings.model,
                input=transcript,
                instructions=instructions,
                text={"format": {"type": "text"}, "verbosity": self.settings.verbosity},
                tools=tools,
                stream=True,
            )

            async for event in response_stream:
                if event.type == "response.output_text.delta":
                    yield TextDelta(item_id=event.item_id, delta=event.delta)
                elif event.type == "response.completed":
                    output = [item.model_dump(exclude_none=True) for item in event.response.output]
                    yield Completion(output=output, usage=TokenUsage.from_usage(event.response.usage))
                    return
                elif event.type == "response.failed":
                    error = getattr(event.response, "error", None)
                    message = getattr(error, "message", None) or "Completion failed"
                    raise UpstreamStreamError(message)
                elif event.type == "error":
                    raise UpstreamStreamError(getattr(event, "message", None) or "Completion stream error")
        except OpenAIError as e:
            logger.error("Completion request failed", model=self.settings.model, error=str(e))
            raise UpstreamStreamError(str(e)) from e

        raise UpstreamStreamError("Completion stream ended without a completed response")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
