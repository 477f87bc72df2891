"""Tools exposed to the model and their execution.

Every call produces exactly one ``function_call_output`` item. Failures are
reported to the model as ``{"success": false, "error": ...}`` so the
transcript stays well-formed and the model can recover in conversation.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from elvira_shared.logging import get_logger

from ..errors import CatalogError, ToolExecutionError
from .catalog_client import Catalog

logger = get_logger(__name__)

DISPLAY_ITEMS = "display_items"
LIST_ITEMS = "list_items"
GET_ITEM_DETAIL = "get_item_detail"

FILTER_FIELDS = (
    "title",
    "summary",
    "category_term",
    "author",
    "language_code",
    "published_at__gte",
    "published_at__lte",
    "config__readium_enabled",
    "query",
)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


def _nullable(kind: str, description: str) -> dict[str, Any]:
    return {"type": [kind, "null"], "description": description}


TOOL_DECLARATIONS: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": GET_ITEM_DETAIL,
        "description": "Retrieve full details of one catalog entry by its ID and catalog ID",
        "strict": True,
        "parameters": {
            "type": "object",
            "properties": {
                "id": {
                    "type": "string",
                    "description": "Unique identifier of the entry",
                },
                "catalogId": _nullable(
                    "string",
                    "Catalog ID the entry belongs to, taken from the entry's catalog_id "
                    "or from an earlier display_items call",
                ),
            },
            "required": ["id", "catalogId"],
            "additionalProperties": False,
        },
    },
    {
        "type": "function",
        "name": LIST_ITEMS,
        "description": "Browse catalog entries with pagination and optional filters",
        "strict": True,
        "parameters": {
            "type": "object",
            "properties": {
                "page": {"type": "integer", "description": "Page number, starting from 1"},
                "limit": {"type": "integer", "description": "Entries per page"},
                "title": _nullable("string", "Filter by title (unaccented, case-insensitive contains)"),
                "summary": _nullable("string", "Filter by summary (unaccented, case-insensitive contains)"),
                "category_term": _nullable("string", "Filter by category term (exact)"),
                "author": _nullable("string", "Filter by author (exact)"),
                "language_code": _nullable("string", "Filter by language code (exact)"),
                "published_at__gte": _nullable("string", "Published on or after (ISO 8601)"),
                "published_at__lte": _nullable("string", "Published on or before (ISO 8601)"),
                "config__readium_enabled": _nullable("boolean", "Filter by readium availability"),
                "query": _nullable("string", "Full-text query"),
            },
            "required": ["page", "limit", *FILTER_FIELDS],
            "additionalProperties": False,
        },
    },
    {
        "type": "function",
        "name": DISPLAY_ITEMS,
        "description": "Show entries to the user. Each entry must carry its catalogId.",
        "strict": True,
        "parameters": {
            "type": "object",
            "properties": {
                "items": {
                    "type": "array",
                    "description": "Entries to display with the catalog each belongs to",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string", "description": "Entry ID"},
                            "catalogId": {"type": "string", "description": "Catalog ID of the entry"},
                        },
                        "required": ["id", "catalogId"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["items"],
            "additionalProperties": False,
        },
    },
]


@dataclass
class Focus:
    """The catalog item the assistant is primed to discuss."""

    item_id: str | None = None
    catalog_id: str | None = None


EntriesCallback = Callable[[list[str], dict[str, str]], None]


def collect_catalog_ids(payload: Any, found: dict[str, str] | None = None) -> dict[str, str]:
    """Find ``id`` → ``catalog_id`` pairs anywhere in a catalog response."""
    found = {} if found is None else found
    if isinstance(payload, dict):
        entry_id = payload.get("id")
        catalog_id = payload.get("catalog_id") or payload.get("catalogId")
        if entry_id is not None and catalog_id:
            found[str(entry_id)] = str(catalog_id)
        for value in payload.values():
            if isinstance(value, (dict, list)):
                collect_catalog_ids(value, found)
    elif isinstance(payload, list):
        for value in payload:
            collect_catalog_ids(value, found)
    return found


class ToolExecutor:
    """Executes model tool calls for one conversation."""

    def __init__(self, catalog: Catalog, on_entries: EntriesCallback):
        """Initialize the executor.

        Args:
            catalog: Catalog capability for list and detail calls.
            on_entries: Receives ids and their catalogs on every display.
        """
        self.catalog = catalog
        self.on_entries = on_entries
        self.focus = Focus()
        # Entries this conversation has seen, with the catalog they live in
        self.known_catalogs: dict[str, str] = {}
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            DISPLAY_ITEMS: self.display_items,
            LIST_ITEMS: self.list_items,
            GET_ITEM_DETAIL: self.get_item_detail,
        }

    def remember(self, catalogs: dict[str, str]) -> None:
        self.known_catalogs.update(catalogs)

    def resolve_catalog(self, entry_id: str, catalog_id: str | None = None) -> str | None:
        """Catalog of an entry: explicit, then seen earlier, then the focus."""
        if catalog_id:
            return catalog_id
        if entry_id in self.known_catalogs:
            return self.known_catalogs[entry_id]
        if self.focus.item_id == entry_id and self.focus.catalog_id:
            return self.focus.catalog_id
        return None

    async def execute(self, call: dict[str, Any]) -> dict[str, Any]:
        """Run one ``function_call`` item and build its output item."""
        name = call.get("name", "")
        call_id = call.get("call_id", "")

        try:
            arguments = self._parse_arguments(call.get("arguments"))
            handler = self._handlers.get(name)
            if handler is None:
                raise ToolExecutionError(f"Unknown tool: {name}")
            result = await handler(arguments)
        except (ToolExecutionError, CatalogError) as e:
            logger.warning("Tool call failed", tool=name, call_id=call_id, error=str(e))
            result = {"success": False, "error": str(e)}
        except Exception as e:
            logger.exception("Tool call raised", tool=name, call_id=call_id)
            result = {"success": False, "error": str(e) or type(e).__name__}

        return {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(result, ensure_ascii=False, default=str),
        }

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, dict):
            return raw
        try:
            arguments = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ToolExecutionError(f"Invalid tool arguments: {e}") from e
        if not isinstance(arguments, dict):
            raise ToolExecutionError("Tool arguments must be a JSON object")
        return arguments

    async def display_items(self, arguments: dict[str, Any]) -> dict[str, Any]:
        ids: list[str] = []
        catalogs: dict[str, str] = {}

        if "items" in arguments and arguments["items"] is not None:
            for item in arguments["items"]:
                if not isinstance(item, dict) or not item.get("id"):
                    raise ToolExecutionError("Every displayed item needs an id")
                entry_id = str(item["id"])
                ids.append(entry_id)
                catalog_id = self.resolve_catalog(entry_id, item.get("catalogId"))
                if catalog_id:
                    catalogs[entry_id] = catalog_id
        else:
            given = arguments.get("catalogs") or {}
            for entry_id in arguments.get("ids") or []:
                entry_id = str(entry_id)
                ids.append(entry_id)
                catalog_id = self.resolve_catalog(entry_id, given.get(entry_id))
                if catalog_id:
                    catalogs[entry_id] = catalog_id

        if not ids:
            raise ToolExecutionError("No items to display")

        self.remember(catalogs)
        self.on_entries(ids, catalogs)
        return {"success": True, "displayed": len(ids)}

    async def list_items(self, arguments: dict[str, Any]) -> Any:
        page = max(1, int(arguments.get("page") or 1))
        limit = min(MAX_PAGE_SIZE, max(1, int(arguments.get("limit") or DEFAULT_PAGE_SIZE)))
        filters = {
            key: arguments[key]
            for key in FILTER_FIELDS
            if arguments.get(key) is not None and arguments.get(key) != ""
        }

        result = await self.catalog.search(page, limit, filters)
        self.remember(collect_catalog_ids(result))
        return result

    async def get_item_detail(self, arguments: dict[str, Any]) -> Any:
        entry_id = arguments.get("id")
        if not entry_id:
            raise ToolExecutionError("Entry id is required")
        entry_id = str(entry_id)

        catalog_id = self.resolve_catalog(entry_id, arguments.get("catalogId"))
        if catalog_id is None:
            raise ToolExecutionError(
                f"Catalog ID for entry {entry_id} is unknown. List or display the entry "
                "first, or pass the catalogId from the entry's catalog_id field."
            )

        result = await self.catalog.detail(entry_id, catalog_id)
        self.known_catalogs[entry_id] = catalog_id
        return result
