"""Query weight heuristics used to price user messages.

A message is scored against two vocabularies. Catalog browsing costs a
single message; complex generation tasks cost up to three.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

CATALOG_KEYWORDS = (
    "book",
    "entry",
    "title",
    "author",
    "category",
    "published",
    "language",
    "summary",
    "catalog",
    "readium",
    "literature",
    "library",
    "search",
    "find",
    "list",
    "filter",
    "query entries",
    "get entries",
    "display books",
)

COMPLEX_KEYWORDS = (
    "analysis",
    "synthesis",
    "summarize",
    "compare",
    "contrast",
    "explain",
    "calculate",
    "solve",
    "optimize",
    "design",
    "create",
    "generate",
    "write",
    "compose",
    "translate",
)

EXTENDED_QUERY_LENGTH = 500
MAX_WEIGHT = 3.0


class QueryCategory(str, Enum):
    """Pricing category of a query."""

    CATALOG = "catalog"
    COMPLEX = "complex"
    EXTENDED = "extended"
    OTHER = "other"


@dataclass(frozen=True)
class QueryWeight:
    """Result of analysing a query."""

    weight: float
    category: QueryCategory
    reason: str

    @property
    def messages(self) -> int:
        """Messages charged against the daily budget."""
        return math.ceil(self.weight)


def count_hits(text: str, keywords: tuple[str, ...]) -> int:
    """Count how many keywords occur in ``text`` (substring match)."""
    return sum(1 for keyword in keywords if keyword in text)


def analyze_query(query: str) -> QueryWeight:
    """Classify a query and compute its weight."""
    lowered = query.lower()
    catalog_hits = count_hits(lowered, CATALOG_KEYWORDS)
    complex_hits = count_hits(lowered, COMPLEX_KEYWORDS)

    if catalog_hits > complex_hits:
        return QueryWeight(
            weight=1.0,
            category=QueryCategory.CATALOG,
            reason=f"Catalog query ({catalog_hits} indicators)",
        )

    if complex_hits > catalog_hits:
        weight = min(MAX_WEIGHT, 1.5 + 0.3 * complex_hits)
        return QueryWeight(
            weight=weight,
            category=QueryCategory.COMPLEX,
            reason=f"Complex operation ({complex_hits} indicators, weight: {weight:.2f}x)",
        )

    if len(query) > EXTENDED_QUERY_LENGTH:
        return QueryWeight(
            weight=1.5,
            category=QueryCategory.EXTENDED,
            reason=f"Extended query (length: {len(query)} chars)",
        )

    return QueryWeight(weight=1.0, category=QueryCategory.OTHER, reason="Standard query")
