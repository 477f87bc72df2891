"""Quota Governor: per-user daily message and token budgets.

A quota day starts at ``reset_hour`` local time, so the day a usage row
belongs to is the calendar date of ``now - reset_hour``. Rows are created
lazily on first use and removed by the periodic sweep once their day is
over.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from elvira_shared.config import QuotaSettings
from elvira_shared.logging import get_logger
from elvira_shared.storage import DailyLimitRecord, StoragePort

from .query_weight import QueryWeight, analyze_query

logger = get_logger(__name__)


def local_now() -> datetime:
    """Current service-local time, timezone aware."""
    return datetime.now().astimezone()


@dataclass
class UsageCheck:
    """Outcome of a quota check or charge."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    weight: QueryWeight | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "resetAt": self.reset_at.isoformat(),
        }


class QuotaGovernor:
    """Prices user messages and admits or denies them against daily budgets."""

    def __init__(
        self,
        storage: StoragePort,
        settings: QuotaSettings,
        now: Callable[[], datetime] = local_now,
    ):
        """Initialize the governor.

        Args:
            storage: Storage Port holding the daily limit rows.
            settings: Default limits and the reset hour.
            now: Clock returning service-local time.
        """
        self.storage = storage
        self.settings = settings
        self._now = now

    def today(self) -> date:
        """The current quota day."""
        return (self._now() - timedelta(hours=self.settings.reset_hour)).date()

    def next_reset_time(self) -> datetime:
        """When the current quota day ends."""
        now = self._now()
        reset = now.replace(hour=self.settings.reset_hour, minute=0, second=0, microsecond=0)
        if reset <= now:
            reset += timedelta(days=1)
        return reset

    async def _current_limit(self, user_id: str) -> DailyLimitRecord:
        day = self.today()
        limit = await self.storage.get_daily_limit(user_id, day)
        if limit is None:
            limit = await self.storage.create_daily_limit(
                user_id,
                day,
                self.settings.messages,
                self.settings.tokens,
            )
        return limit

    async def check_message_quota(self, user_id: str) -> UsageCheck:
        """Whether the user may send another message today."""
        limit = await self._current_limit(user_id)
        return UsageCheck(
            allowed=limit.messages_used < limit.messages_limit,
            remaining=limit.messages_remaining,
            limit=limit.messages_limit,
            reset_at=self.next_reset_time(),
        )

    async def check_token_quota(self, user_id: str, estimated_tokens: int = 0) -> UsageCheck:
        """Whether ``estimated_tokens`` more tokens fit in today's budget."""
        limit = await self._current_limit(user_id)
        return UsageCheck(
            allowed=limit.tokens_used + estimated_tokens <= limit.tokens_limit,
            remaining=limit.tokens_remaining,
            limit=limit.tokens_limit,
            reset_at=self.next_reset_time(),
        )

    async def record_usage(self, user_id: str, query: str, tokens_used: int = 0) -> UsageCheck:
        """Charge a message against today's budget.

        The message costs ``ceil(weight)`` messages. The check and the
        increment happen atomically in storage; on denial nothing is
        charged and ``allowed`` is False.
        """
        weight = analyze_query(query)
        limit = await self._current_limit(user_id)

        updated = await self.storage.try_increment_daily_limit(
            limit.id,
            weight.messages,
            tokens_used,
        )
        if updated is None:
            current = await self.storage.get_daily_limit(user_id, limit.day) or limit
            logger.info(
                "Daily quota exceeded",
                user_id=user_id,
                messages_used=current.messages_used,
                messages_limit=current.messages_limit,
                requested=weight.messages,
                tokens_requested=tokens_used,
            )
            return UsageCheck(
                allowed=False,
                remaining=current.messages_remaining,
                limit=current.messages_limit,
                reset_at=self.next_reset_time(),
                weight=weight,
            )

        logger.info(
            "Recorded usage",
            user_id=user_id,
            messages=weight.messages,
            tokens=tokens_used,
            category=weight.category.value,
        )
        return UsageCheck(
            allowed=True,
            remaining=updated.messages_remaining,
            limit=updated.messages_limit,
            reset_at=self.next_reset_time(),
            weight=weight,
        )

    async def record_tokens(self, user_id: str, tokens: int) -> DailyLimitRecord | None:
        """Add tokens consumed by a finished turn. Never denies."""
        if tokens <= 0:
            return None
        limit = await self._current_limit(user_id)
        return await self.storage.increment_daily_limit(limit.id, 0, tokens)

    async def get_daily_usage(self, user_id: str) -> dict[str, Any]:
        """Today's usage summary for display."""
        limit = await self._current_limit(user_id)
        return {
            "day": limit.day.isoformat(),
            "messages": {
                "used": limit.messages_used,
                "limit": limit.messages_limit,
                "remaining": limit.messages_remaining,
            },
            "tokens": {
                "used": limit.tokens_used,
                "limit": limit.tokens_limit,
                "remaining": limit.tokens_remaining,
            },
            "resetAt": self.next_reset_time().isoformat(),
        }

    async def reset_expired_daily_limits(self) -> int:
        """Delete usage rows of finished quota days."""
        today = self.today()
        removed = await self.storage.reset_daily_limits(today)
        if removed:
            logger.info("Reset expired daily limits", before=today.isoformat(), removed=removed)
        return removed


async def run_reset_sweeps(governor: QuotaGovernor, interval_seconds: float) -> None:
    """Run the expired-limit sweep forever; cancel the task to stop it."""
    while True:
        try:
            await governor.reset_expired_daily_limits()
        except Exception:
            logger.exception("Daily limit sweep failed")
        await asyncio.sleep(interval_seconds)
