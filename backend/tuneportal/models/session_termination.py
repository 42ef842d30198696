"""Audit record written whenever an admin force-deletes a user's sessions."""

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tuneportal.models.base import BaseModel, UTCDateTime, utcnow


class SessionTermination(BaseModel):
    """Append-only termination audit entry.

    The newest record for a user supplies the reason shown on the client's
    "session terminated" screen. ``acknowledged`` is flipped once the client's
    status poll has observed it.
    """

    __tablename__ = "session_terminations"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    terminated_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    terminated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    sessions_terminated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
