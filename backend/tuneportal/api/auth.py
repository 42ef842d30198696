"""Authentication API endpoints."""

import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.api.cookies import clear_auth_cookies, set_auth_cookie, set_session_cookie
from tuneportal.api.deps import (
    extract_session_id,
    extract_token,
    get_request_meta,
    rate_limit,
    require_user,
)
from tuneportal.core.database import get_db
from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import SecurityEventType, Severity, User
from tuneportal.schemas.auth import (
    CurrentUserResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionStatusResponse,
    TerminationReasonResponse,
    UserResponse,
    VerifyEmailRequest,
)
from tuneportal.services.auth import AuthService, Principal, issue_token, verify_token
from tuneportal.services.authenticator import AuthContext, AuthPolicy
from tuneportal.services.ban import BanEnforcer
from tuneportal.services.errors import (
    AuthenticationError,
    AuthorizationError,
    BanEnforcedError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    ValidationError,
)
from tuneportal.services.rate_limiter import (
    login_rule,
    password_reset_request_rule,
    password_reset_rule,
    register_rule,
    resend_verification_rule,
    verify_email_rule,
)
from tuneportal.services.security_log import get_security_logger
from tuneportal.services.session_store import SessionStore
from tuneportal.services.termination import TerminationService
from tuneportal.services.verification import MIN_PASSWORD_LENGTH, VerificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a reset link has been sent"
_RESEND_VERIFICATION_MESSAGE = (
    "If an unverified account with that email exists, a new verification link has been sent"
)


@router.post(
    "/login",
    response_model=LoginResponse,
    dependencies=[Depends(rate_limit(login_rule))],
)
async def login(
    body: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
) -> LoginResponse:
    """Authenticate with username and password.

    Sets the ``auth_token`` and ``session_id`` cookies. Unknown user and wrong
    password produce the same 401.
    """
    auth_service = AuthService(db)
    security_logger = get_security_logger()

    try:
        user = await auth_service.authenticate(body.username, body.password)
    except InvalidCredentialsError:
        known = await auth_service.get_user_by_username(body.username)
        await security_logger.record(
            SecurityEventType.LOGIN_FAILURE,
            Severity.WARNING,
            user_id=known.id if known else None,
            request_meta=meta,
            details={
                "username": body.username,
                "reason": "invalid_password" if known else "unknown_user",
            },
        )
        raise

    await _check_not_banned(db, user, meta, stage="login")
    if not user.email_verified:
        raise EmailNotVerifiedError(email_verification_required=True, email=user.email)

    await _start_session(db, user, response, meta)
    await security_logger.record(
        SecurityEventType.LOGIN_SUCCESS, Severity.INFO, user_id=user.id, request_meta=meta
    )
    logger.info(f"User logged in: {user.username}")
    return LoginResponse(user=UserResponse.model_validate(user))


async def _check_not_banned(db: AsyncSession, user: User, meta: RequestMeta, stage: str) -> None:
    try:
        BanEnforcer(db).check(user)
    except BanEnforcedError:
        await get_security_logger().record(
            SecurityEventType.BANNED_ACCESS_ATTEMPT,
            Severity.WARNING,
            user_id=user.id,
            request_meta=meta,
            details={"username": user.username, "stage": stage},
        )
        raise


async def _start_session(
    db: AsyncSession, user: User, response: Response, meta: RequestMeta
) -> None:
    """Create a session row and hand out both cookies."""
    session_id = await SessionStore(db).create_session(user.id, meta.ip_address, meta.user_agent)
    await AuthService(db).record_login(user, meta.ip_address)

    set_auth_cookie(response, issue_token(Principal.from_user(user)))
    set_session_cookie(response, session_id)

    await get_security_logger().record(
        SecurityEventType.SESSION_CREATED, Severity.INFO, user_id=user.id, request_meta=meta
    )


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit(register_rule))],
)
async def register(
    body: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
) -> RegisterResponse:
    """Create an unverified account and mail it a verification link.

    The account cannot log in until the link is redeemed via ``/verify-email``.
    """
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    try:
        user = await AuthService(db).create_user(body.username, body.email, body.password)
    except ConflictError as e:
        raise ConflictError("Username or email already exists") from e

    await VerificationService(db).send_verification_email(user)
    await get_security_logger().record(
        SecurityEventType.REGISTRATION,
        Severity.INFO,
        user_id=user.id,
        request_meta=meta,
        details={"username": user.username},
    )
    return RegisterResponse(user=UserResponse.model_validate(user), email_verification_sent=True)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
) -> MessageResponse:
    """Delete the caller's session (if any) and expire both cookies."""
    session_id = extract_session_id(request)
    user_id = None
    token = extract_token(request)
    if token:
        try:
            user_id = verify_token(token).id
        except AuthenticationError:
            user_id = None

    if session_id:
        await SessionStore(db).delete(session_id)

    clear_auth_cookies(response)
    if user_id is not None:
        await get_security_logger().record(
            SecurityEventType.LOGOUT, Severity.INFO, user_id=user_id, request_meta=meta
        )
    return MessageResponse(message="Logged out successfully")


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    context: AuthContext = Depends(require_user(AuthPolicy.STATEFUL)),
) -> RefreshResponse:
    """Reissue the auth cookie when it is close to expiry."""
    return RefreshResponse(refreshed=context.refreshed_token is not None)


@router.get("/me", response_model=CurrentUserResponse)
@router.get("/user", response_model=CurrentUserResponse)
async def current_user(
    context: AuthContext = Depends(require_user(AuthPolicy.STATEFUL)),
) -> CurrentUserResponse:
    return CurrentUserResponse(user=UserResponse.model_validate(context.user))


@router.get("/session-status", response_model=SessionStatusResponse)
async def session_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SessionStatusResponse:
    """Poll endpoint for detecting an administrative termination.

    Never fails on a missing or dead session: that is itself the answer.
    """
    token = extract_token(request)
    if not token:
        return SessionStatusResponse(terminated=True, reason="Not authenticated")
    try:
        principal = verify_token(token)
    except AuthenticationError:
        return SessionStatusResponse(terminated=True, reason="Session invalid")

    session_row = None
    session_id = extract_session_id(request)
    if session_id:
        session_row = await SessionStore(db).get_active(session_id)
        if session_row is not None and session_row.user_id != principal.id:
            session_row = None

    poll = await TerminationService(db).session_status(
        principal.id,
        session_live=session_row is not None,
        session_started_at=session_row.created_at if session_row else None,
    )
    return SessionStatusResponse(terminated=poll.terminated, reason=poll.reason)


@router.get("/termination-reason", response_model=TerminationReasonResponse)
async def termination_reason(
    request: Request,
    user_id: int = Query(..., alias="userId", ge=1),
    db: AsyncSession = Depends(get_db),
) -> TerminationReasonResponse:
    """Why the caller was logged out.

    Only the token is checked: by the time a client asks, its session row is
    already gone. The token must belong to ``userId``.
    """
    token = extract_token(request)
    if not token:
        raise AuthenticationError()
    if verify_token(token).id != user_id:
        raise AuthorizationError("You can only view your own termination reason")

    reason = await TerminationService(db).get_termination_reason(user_id)
    return TerminationReasonResponse(reason=reason)


@router.post(
    "/verify-email",
    response_model=LoginResponse,
    dependencies=[Depends(rate_limit(verify_email_rule))],
)
async def verify_email(
    body: VerifyEmailRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
) -> LoginResponse:
    """Redeem a verification link and sign the user in."""
    user = await VerificationService(db).verify_email(body.token)
    await get_security_logger().record(
        SecurityEventType.EMAIL_VERIFICATION, Severity.INFO, user_id=user.id, request_meta=meta
    )

    await _check_not_banned(db, user, meta, stage="verify_email")
    await _start_session(db, user, response, meta)
    return LoginResponse(user=UserResponse.model_validate(user))


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(resend_verification_rule))],
)
async def resend_verification(
    body: ResendVerificationRequest,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
) -> MessageResponse:
    """Same answer whether or not the address needs a link."""
    user = await VerificationService(db).resend_verification(body.email)
    if user is not None:
        await get_security_logger().record(
            SecurityEventType.EMAIL_VERIFICATION,
            Severity.INFO,
            user_id=user.id,
            request_meta=meta,
            details={"stage": "resend"},
        )
    return MessageResponse(message=_RESEND_VERIFICATION_MESSAGE)


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(password_reset_request_rule))],
)
async def forgot_password(
    body: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
) -> MessageResponse:
    """Always answers the same way so addresses cannot be enumerated."""
    user = await VerificationService(db).request_password_reset(body.email)
    await get_security_logger().record(
        SecurityEventType.PASSWORD_RESET_REQUEST,
        Severity.INFO,
        user_id=user.id if user else None,
        request_meta=meta,
        details={"account_found": user is not None},
    )
    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(password_reset_rule))],
)
async def reset_password(
    body: ResetPasswordRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
) -> MessageResponse:
    """Set a new password from a reset token; every session is revoked."""
    user, revoked = await VerificationService(db).reset_password(body.token, body.password)
    clear_auth_cookies(response)
    await get_security_logger().record(
        SecurityEventType.PASSWORD_RESET_COMPLETE,
        Severity.WARNING,
        user_id=user.id,
        request_meta=meta,
        details={"sessions_revoked": revoked},
    )
    return MessageResponse(message="Password reset successful")
