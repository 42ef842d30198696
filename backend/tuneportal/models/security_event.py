"""Security event and alert models."""

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tuneportal.models.base import BaseModel, UTCDateTime

JSONType = JSON().with_variant(JSONB(), "postgresql")


class SecurityEventType(str, enum.Enum):
    """Known security event types.

    The column is a plain string so new types can be recorded without a
    migration; these are the values the application itself emits.
    """

    # Authentication
    REGISTRATION = "registration"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"

    # Sessions
    SESSION_CREATED = "session_created"
    SESSION_EXPIRED = "session_expired"
    SESSION_INVALIDATED = "session_invalidated"

    # Access control
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    BANNED_ACCESS_ATTEMPT = "banned_access_attempt"
    API_ACCESS = "api_access"
    SENSITIVE_DATA_ACCESS = "sensitive_data_access"

    # Rate limiting
    RATE_LIMIT_CHECK = "rate_limit_check"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    # Admin actions
    ADMIN_USER_UPDATE = "admin_user_update"
    ADMIN_PERMISSION_CHANGE = "admin_permission_change"
    ADMIN_SYSTEM_SETTING_CHANGE = "admin_system_setting_change"

    # Suspicious activity
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    MULTIPLE_FAILED_ATTEMPTS = "multiple_failed_attempts"


class Severity(str, enum.Enum):
    """Closed, ordered severity scale: info < warning < error < critical."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank

    @classmethod
    def at_or_above(cls, minimum: "Severity") -> list["Severity"]:
        return [s for s in _SEVERITY_ORDER if s.rank >= minimum.rank]


_SEVERITY_ORDER = [Severity.INFO, Severity.WARNING, Severity.ERROR, Severity.CRITICAL]


class SecurityEvent(BaseModel):
    """Append-only record of a security-relevant occurrence."""

    __tablename__ = "security_events"

    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Request metadata
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False, default="unknown")
    user_agent: Mapped[str] = mapped_column(String(255), nullable=False, default="unknown")
    path: Mapped[str | None] = mapped_column(String(255), nullable=True)
    method: Mapped[str | None] = mapped_column(String(10), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_security_events_type_created", "event_type", "created_at"),
        Index("ix_security_events_ip_created", "ip_address", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SecurityEvent {self.event_type} {self.severity} user={self.user_id}>"


class SecurityAlert(BaseModel):
    """A security event promoted for operator triage."""

    __tablename__ = "security_alerts"

    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("security_events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    resolved_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
