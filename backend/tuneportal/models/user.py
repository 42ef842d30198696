"""User model - portal accounts, roles and ban state."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tuneportal.models.base import BaseModel, UTCDateTime


class Role(str, enum.Enum):
    """Binary authorization axis: admin or not."""

    USER = "user"
    ADMIN = "admin"


class User(BaseModel):
    """Portal user.

    Ban state lives on the user row. A ban whose ``ban_expires_at`` is in the
    past is not in effect even though ``is_banned`` stays true; a null expiry
    means the ban is permanent.
    """

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Role] = mapped_column(
        Enum(Role, name="user_role", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=Role.USER,
    )
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ban
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ban_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ban_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    banned_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    banned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Tracking
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_login_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def __repr__(self) -> str:
        return f"<User {self.id} {self.username} ({self.role.value})>"
