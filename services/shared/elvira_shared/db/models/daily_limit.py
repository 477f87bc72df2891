"""Daily limit model for per-user message and token budgets."""

from datetime import date

from sqlalchemy import Date, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, generate_id


class DailyLimit(Base, TimestampMixin):
    """Usage counters for one user on one quota day."""

    __tablename__ = "daily_limits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )
    day: Mapped[date] = mapped_column(Date, nullable=False)
    messages_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    messages_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_limit: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "day", name="uq_daily_limits_user_day"),
    )
