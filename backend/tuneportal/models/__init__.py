# TunePortal Models
from tuneportal.models.base import BaseModel
from tuneportal.models.rate_limit import RateLimitCounter
from tuneportal.models.security_event import (
    SecurityAlert,
    SecurityEvent,
    SecurityEventType,
    Severity,
)
from tuneportal.models.session import UserSession
from tuneportal.models.session_termination import SessionTermination
from tuneportal.models.user import Role, User
from tuneportal.models.verification_token import TokenPurpose, VerificationToken

__all__ = [
    "BaseModel",
    "RateLimitCounter",
    "Role",
    "SecurityAlert",
    "SecurityEvent",
    "SecurityEventType",
    "SessionTermination",
    "Severity",
    "TokenPurpose",
    "User",
    "UserSession",
    "VerificationToken",
]
