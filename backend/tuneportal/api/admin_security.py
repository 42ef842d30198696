"""Admin security dashboard API: event log, alerts, sessions and bans."""

import logging
from datetime import datetime

from fastapi import APIRouter, Body, Depends, Path, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.api.deps import get_request_meta, require_admin
from tuneportal.core.database import get_db
from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import SecurityEventType, Severity
from tuneportal.schemas.security import (
    ActiveSessionResponse,
    ActiveSessionsResponse,
    BanRequest,
    BanResponse,
    ResolveAlertRequest,
    SecurityAlertResponse,
    SecurityEventResponse,
    SecurityLogsResponse,
    SecurityStats,
    SecurityStatsResponse,
    SuccessResponse,
    TerminateSessionRequest,
    TerminateSessionResponse,
)
from tuneportal.services.authenticator import AuthContext, AuthPolicy
from tuneportal.services.ban import BanEnforcer, ban_termination_reason
from tuneportal.services.errors import (
    ConflictError,
    NotFoundError,
    ServiceError,
    StoreError,
    ValidationError,
)
from tuneportal.services.security_log import (
    DEFAULT_QUERY_LIMIT,
    EventFilters,
    SecurityLogService,
    get_security_logger,
)
from tuneportal.services.session_store import SessionStore
from tuneportal.services.termination import TerminationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/security", tags=["admin-security"])


@router.get("/logs", response_model=SecurityLogsResponse)
async def list_security_logs(
    user_id: int | None = Query(None, alias="userId"),
    event_type: str | None = Query(None, alias="eventType", max_length=50),
    severity: Severity | None = Query(None),
    min_severity: Severity | None = Query(None, alias="minSeverity"),
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
    limit: int = Query(DEFAULT_QUERY_LIMIT, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _admin: AuthContext = Depends(require_admin(AuthPolicy.STATELESS)),
) -> SecurityLogsResponse:
    """Security events, newest first. ``limit`` is capped at 100."""
    filters = EventFilters(
        user_id=user_id,
        event_type=event_type,
        severity=severity,
        min_severity=min_severity,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    records, total = await SecurityLogService(db).query(filters)
    logs = [
        SecurityEventResponse(
            id=r.event.id,
            user_id=r.event.user_id,
            username=r.username,
            email=r.email,
            event_type=r.event.event_type,
            severity=r.event.severity,
            ip_address=r.event.ip_address,
            user_agent=r.event.user_agent,
            path=r.event.path,
            method=r.event.method,
            details=r.event.details,
            created_at=r.event.created_at,
        )
        for r in records
    ]
    return SecurityLogsResponse(logs=logs, total=total)


@router.get("/stats", response_model=SecurityStatsResponse)
async def security_stats(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    _admin: AuthContext = Depends(require_admin(AuthPolicy.STATELESS)),
) -> SecurityStatsResponse:
    service = SecurityLogService(db)
    stats = await service.stats(days)
    alerts = await service.unresolved_alerts(limit=10)
    return SecurityStatsResponse(
        stats=SecurityStats.model_validate(stats),
        unresolved_alerts=[SecurityAlertResponse.model_validate(a) for a in alerts],
    )


@router.get("/alerts", response_model=list[SecurityAlertResponse])
async def list_unresolved_alerts(
    limit: int = Query(50, ge=1),
    db: AsyncSession = Depends(get_db),
    _admin: AuthContext = Depends(require_admin(AuthPolicy.STATELESS)),
) -> list[SecurityAlertResponse]:
    alerts = await SecurityLogService(db).unresolved_alerts(limit)
    return [SecurityAlertResponse.model_validate(a) for a in alerts]


@router.post("/alerts/resolve", response_model=SuccessResponse)
async def resolve_alert(
    body: ResolveAlertRequest,
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
    admin: AuthContext = Depends(require_admin(AuthPolicy.STATEFUL)),
) -> SuccessResponse:
    """Resolve an alert.

    404 if it does not exist, 409 if it was already resolved. The attempt is
    logged as an admin action either way.
    """
    outcome = "failed"
    try:
        if await SecurityLogService(db).resolve_alert(body.alert_id, admin.user_id, body.notes):
            outcome = "resolved"
            return SuccessResponse()
        outcome = "already_resolved"
        raise ConflictError("Alert is already resolved")
    except NotFoundError:
        outcome = "not_found"
        raise
    except SQLAlchemyError as e:
        logger.error(f"Failed to resolve alert {body.alert_id}: {e}")
        raise StoreError("Failed to resolve security alert") from e
    finally:
        await get_security_logger().log_admin_action(
            admin.user_id,
            "resolve_security_alert",
            meta,
            event_type=SecurityEventType.ADMIN_SYSTEM_SETTING_CHANGE,
            success=outcome == "resolved",
            details={"alert_id": body.alert_id, "notes": body.notes, "outcome": outcome},
        )


@router.get("/sessions", response_model=ActiveSessionsResponse)
async def list_active_sessions(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    _admin: AuthContext = Depends(require_admin(AuthPolicy.STATELESS, sensitive=True)),
) -> ActiveSessionsResponse:
    rows = await SessionStore(db).list_active(limit)
    sessions = [
        ActiveSessionResponse(
            id=s.id,
            user_id=s.user_id,
            username=u.username,
            email=u.email,
            created_at=s.created_at,
            expires_at=s.expires_at,
            last_activity_at=s.last_activity_at,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
        )
        for s, u in rows
    ]
    return ActiveSessionsResponse(sessions=sessions, total=len(sessions))


@router.delete("/sessions/{session_id}", response_model=TerminateSessionResponse)
async def terminate_session(
    session_id: str = Path(..., max_length=64),
    body: TerminateSessionRequest | None = Body(None),
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
    admin: AuthContext = Depends(require_admin(AuthPolicy.STATEFUL)),
) -> TerminateSessionResponse:
    """Terminate every session of the user who owns ``session_id``."""
    reason = body.reason if body else None
    security_logger = get_security_logger()
    try:
        result = await TerminationService(db).terminate_session(session_id, admin.user_id, reason)
    except (ServiceError, SQLAlchemyError) as e:
        await security_logger.log_admin_action(
            admin.user_id,
            "terminate_session",
            meta,
            success=False,
            details={"session_id": session_id, "error": type(e).__name__},
        )
        if isinstance(e, SQLAlchemyError):
            raise StoreError("Failed to terminate session") from e
        raise

    target_user_id = result.user_id
    await security_logger.record(
        SecurityEventType.SESSION_INVALIDATED,
        Severity.WARNING,
        user_id=target_user_id,
        request_meta=meta,
        details={
            "session_id": session_id,
            "terminated_by": admin.user_id,
            "terminated_sessions": result.terminated_count,
            "reason": reason,
        },
    )
    await security_logger.log_admin_action(
        admin.user_id,
        "terminate_session",
        meta,
        details={
            "target_user_id": target_user_id,
            "session_id": session_id,
            "terminated_sessions": result.terminated_count,
        },
    )
    return TerminateSessionResponse(
        terminated_sessions=result.terminated_count, user_id=target_user_id
    )


@router.post("/users/{user_id}/ban", response_model=BanResponse)
async def ban_user(
    body: BanRequest,
    user_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
    admin: AuthContext = Depends(require_admin(AuthPolicy.STATEFUL)),
) -> BanResponse:
    """Ban a user for ``duration`` (``"permanent"`` or ``"<n>_<unit>"``)."""
    details = {"target_user_id": user_id, "reason": body.reason, "duration": body.duration}
    security_logger = get_security_logger()

    if user_id == admin.user_id:
        await security_logger.log_admin_action(
            admin.user_id, "ban_user", meta, success=False, details={**details, "error": "self"}
        )
        raise ValidationError("You cannot ban your own account")

    try:
        result = await BanEnforcer(db).ban_user(user_id, body.reason, body.duration, admin.user_id)
    except ValueError as e:
        await security_logger.log_admin_action(
            admin.user_id, "ban_user", meta, success=False, details={**details, "error": str(e)}
        )
        raise ValidationError(
            "Invalid duration. Use 'permanent' or '<n>_<minutes|hours|days|weeks|months>'"
        ) from e
    except (ServiceError, SQLAlchemyError) as e:
        await security_logger.log_admin_action(
            admin.user_id,
            "ban_user",
            meta,
            success=False,
            details={**details, "error": type(e).__name__},
        )
        if isinstance(e, SQLAlchemyError):
            raise StoreError("Failed to ban user") from e
        raise

    await security_logger.record(
        SecurityEventType.SESSION_INVALIDATED,
        Severity.WARNING,
        user_id=user_id,
        request_meta=meta,
        details={
            "terminated_by": admin.user_id,
            "terminated_sessions": result.sessions_deleted,
            "reason": ban_termination_reason(body.reason),
        },
    )
    await security_logger.log_admin_action(
        admin.user_id,
        "ban_user",
        meta,
        details={
            **details,
            "ban_expires_at": result.expires_at,
            "sessions_terminated": result.sessions_deleted,
        },
    )
    return BanResponse(
        user_id=result.user_id,
        ban_expires_at=result.expires_at,
        sessions_terminated=result.sessions_deleted,
    )


@router.delete("/users/{user_id}/ban", response_model=SuccessResponse)
async def unban_user(
    user_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
    admin: AuthContext = Depends(require_admin(AuthPolicy.STATEFUL)),
) -> SuccessResponse:
    success = False
    try:
        await BanEnforcer(db).unban_user(user_id, admin.user_id)
        success = True
    except SQLAlchemyError as e:
        raise StoreError("Failed to lift ban") from e
    finally:
        await get_security_logger().log_admin_action(
            admin.user_id,
            "unban_user",
            meta,
            success=success,
            details={"target_user_id": user_id},
        )
    return SuccessResponse()
