# TunePortal Services
from tuneportal.services.auth import AuthService, Principal
from tuneportal.services.authenticator import AuthContext, Authenticator, AuthPolicy
from tuneportal.services.ban import BanEnforcer
from tuneportal.services.rate_limiter import RateLimiter
from tuneportal.services.security_log import (
    SecurityEventLogger,
    SecurityLogService,
    get_security_logger,
)
from tuneportal.services.session_store import SessionStore
from tuneportal.services.termination import TerminationService
from tuneportal.services.verification import VerificationService

__all__ = [
    "AuthContext",
    "AuthPolicy",
    "AuthService",
    "Authenticator",
    "BanEnforcer",
    "Principal",
    "RateLimiter",
    "SecurityEventLogger",
    "SecurityLogService",
    "SessionStore",
    "TerminationService",
    "VerificationService",
    "get_security_logger",
]
