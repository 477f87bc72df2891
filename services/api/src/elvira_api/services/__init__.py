"""API services package."""

from .catalog_client import CatalogClient, CatalogClientFactory
from .llm_service import CompletionService, OpenAICompletionService
from .orchestrator import ConversationOrchestrator, TurnState
from .quota_governor import QuotaGovernor, UsageCheck
from .session_registry import LiveSession, SessionRegistry

__all__ = [
    "CatalogClient",
    "CatalogClientFactory",
    "CompletionService",
    "ConversationOrchestrator",
    "LiveSession",
    "OpenAICompletionService",
    "QuotaGovernor",
    "SessionRegistry",
    "TurnState",
    "UsageCheck",
]
