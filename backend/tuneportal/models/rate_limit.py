"""Persisted fixed-window rate limit counters."""

from sqlalchemy import BigInteger, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tuneportal.core.database import Base


class RateLimitCounter(Base):
    """Request count for one (ip, action) pair inside one fixed window.

    ``window_start_ms`` is the window boundary in epoch milliseconds; the unique
    constraint is what makes the upsert-and-increment atomic.
    """

    __tablename__ = "rate_limit_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    window_start_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    window_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "ip_address", "action", "window_start_ms", name="uq_rate_limit_counters_key"
        ),
    )
