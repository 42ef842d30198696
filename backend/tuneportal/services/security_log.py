"""Security event log and alerting.

Writes go through ``SecurityEventLogger``, a process-wide singleton that opens
its own database session per event so a rolled-back request never loses its
audit trail. Writes are bounded by a timeout and never raise into the caller.

Reads, alert promotion and resolution live on ``SecurityLogService``, which
works on whatever session it is handed.
"""

import asyncio
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.core.config import settings
from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import SecurityAlert, SecurityEvent, SecurityEventType, Severity, User
from tuneportal.services.errors import NotFoundError
from tuneportal.services.webhook_alerting import send_alert

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 100
DEFAULT_QUERY_LIMIT = 50

_UNSAFE_CHARS = re.compile(r"[\x00-\x1f\x7f\u2028\u2029<>]")
_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "cookie", "api_key")
_MAX_STRING_LENGTH = 1000

# Event types whose repetition for one identity is promoted to an alert
REPEAT_ALERT_TYPES: dict[str, str] = {
    SecurityEventType.LOGIN_FAILURE.value: SecurityEventType.MULTIPLE_FAILED_ATTEMPTS.value,
    SecurityEventType.UNAUTHORIZED_ACCESS.value: "repeated_unauthorized_access",
    SecurityEventType.BANNED_ACCESS_ATTEMPT.value: "repeated_banned_access",
    SecurityEventType.RATE_LIMIT_EXCEEDED.value: "repeated_rate_limit_exceeded",
}


def sanitize_value(value: Any, depth: int = 0) -> Any:
    """Strip log-injection characters and bound nesting/size of ``value``."""
    if depth > 5:
        return "[truncated]"
    if isinstance(value, str):
        return _UNSAFE_CHARS.sub("", value)[:_MAX_STRING_LENGTH]
    if isinstance(value, dict):
        return sanitize_details(value, depth + 1)
    if isinstance(value, list | tuple):
        return [sanitize_value(v, depth + 1) for v in value[:50]]
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, bool | int | float):
        return value
    return sanitize_value(str(value), depth)


def sanitize_details(details: dict[str, Any] | None, depth: int = 0) -> dict[str, Any] | None:
    if details is None:
        return None
    clean: dict[str, Any] = {}
    for key, value in details.items():
        key = _UNSAFE_CHARS.sub("", str(key))[:100]
        if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
            clean[key] = "[REDACTED]"
        else:
            clean[key] = sanitize_value(value, depth)
    return clean


@dataclass
class EventFilters:
    """Filters for the admin security dashboard."""

    user_id: int | None = None
    event_type: str | None = None
    severity: Severity | None = None
    min_severity: Severity | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = DEFAULT_QUERY_LIMIT
    offset: int = 0

    def __post_init__(self) -> None:
        self.limit = max(1, min(self.limit, MAX_QUERY_LIMIT))
        self.offset = max(0, self.offset)


@dataclass
class EventRecord:
    """A security event joined with its user's identity, if any."""

    event: SecurityEvent
    username: str | None
    email: str | None


@dataclass
class SecurityStats:
    total_events: int
    events_by_type: dict[str, int]
    events_by_severity: dict[str, int]
    failed_logins_24h: int
    critical_events_24h: int
    unresolved_alerts: int


class SecurityLogService:
    """Read path, alert promotion and retention for security events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def query(self, filters: EventFilters) -> tuple[list[EventRecord], int]:
        """Return one page of events (newest first) and the unpaged total."""
        conditions = []
        if filters.user_id is not None:
            conditions.append(SecurityEvent.user_id == filters.user_id)
        if filters.event_type:
            conditions.append(SecurityEvent.event_type == filters.event_type)
        if filters.severity is not None:
            conditions.append(SecurityEvent.severity == filters.severity.value)
        elif filters.min_severity is not None:
            allowed = [s.value for s in Severity.at_or_above(filters.min_severity)]
            conditions.append(SecurityEvent.severity.in_(allowed))
        if filters.start_date is not None:
            conditions.append(SecurityEvent.created_at >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(SecurityEvent.created_at <= filters.end_date)

        where = and_(*conditions) if conditions else None

        count_query = select(func.count(SecurityEvent.id))
        page_query = (
            select(SecurityEvent, User.username, User.email)
            .outerjoin(User, User.id == SecurityEvent.user_id)
            .order_by(SecurityEvent.created_at.desc(), SecurityEvent.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        if where is not None:
            count_query = count_query.where(where)
            page_query = page_query.where(where)

        total = (await self.session.execute(count_query)).scalar() or 0
        rows = (await self.session.execute(page_query)).all()
        return [EventRecord(event=r[0], username=r[1], email=r[2]) for r in rows], total

    async def get_alert(self, alert_id: int) -> SecurityAlert | None:
        result = await self.session.execute(
            select(SecurityAlert).where(SecurityAlert.id == alert_id)
        )
        return result.scalar_one_or_none()

    async def unresolved_alerts(self, limit: int = 50) -> list[SecurityAlert]:
        result = await self.session.execute(
            select(SecurityAlert)
            .where(SecurityAlert.is_resolved.is_(False))
            .order_by(SecurityAlert.created_at.desc(), SecurityAlert.id.desc())
            .limit(max(1, min(limit, MAX_QUERY_LIMIT)))
        )
        return list(result.scalars().all())

    async def resolve_alert(self, alert_id: int, resolved_by: int, notes: str | None) -> bool:
        """Mark an alert resolved.

        Raises NotFoundError when the alert does not exist. Returns False when it
        was already resolved; the earlier resolution is left untouched.
        """
        if await self.get_alert(alert_id) is None:
            raise NotFoundError("Alert not found")

        result = await self.session.execute(
            update(SecurityAlert)
            .where(SecurityAlert.id == alert_id, SecurityAlert.is_resolved.is_(False))
            .values(
                is_resolved=True,
                resolved_by=resolved_by,
                resolution_notes=notes,
                resolved_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return (result.rowcount or 0) == 1

    async def promote(self, event: SecurityEvent) -> SecurityAlert | None:
        """Create an alert for ``event`` if it warrants one.

        Promotion is derived from the stored events themselves: either the
        event's severity reaches the configured threshold, or enough events of
        the same type for the same user or IP landed inside the repeat window.
        An identity with an unresolved alert of the same type gets no new one.
        """
        severity = Severity(event.severity)
        threshold = Severity(settings.alert_severity_threshold)

        if severity.at_least(threshold):
            return await self._create_alert_once(
                event,
                alert_type=event.event_type,
                severity=severity,
                message=f"{event.event_type} event with severity {severity.value}",
                user_id=event.user_id,
                ip_address=None if event.user_id is not None else _known_ip(event.ip_address),
            )

        alert_type = REPEAT_ALERT_TYPES.get(event.event_type)
        if alert_type is None:
            return None

        since = datetime.now(UTC) - timedelta(minutes=settings.alert_repeat_window_minutes)
        identities: list[tuple[int | None, str | None]] = []
        if event.user_id is not None:
            identities.append((event.user_id, None))
        ip = _known_ip(event.ip_address)
        if ip is not None:
            identities.append((None, ip))

        for user_id, ip_address in identities:
            query = select(func.count(SecurityEvent.id)).where(
                SecurityEvent.event_type == event.event_type,
                SecurityEvent.created_at >= since,
            )
            if user_id is not None:
                query = query.where(SecurityEvent.user_id == user_id)
            else:
                query = query.where(SecurityEvent.ip_address == ip_address)
            count = (await self.session.execute(query)).scalar() or 0
            if count < settings.alert_repeat_threshold:
                continue

            subject = f"user {user_id}" if user_id is not None else f"IP {ip_address}"
            # The first identity over the threshold decides; an open alert suppresses a new one
            return await self._create_alert_once(
                event,
                alert_type=alert_type,
                severity=Severity.WARNING,
                message=(
                    f"{count} {event.event_type} events for {subject} in the last "
                    f"{settings.alert_repeat_window_minutes} minutes"
                ),
                user_id=user_id,
                ip_address=ip_address,
            )
        return None

    async def _create_alert_once(
        self,
        event: SecurityEvent,
        alert_type: str,
        severity: Severity,
        message: str,
        user_id: int | None,
        ip_address: str | None,
    ) -> SecurityAlert | None:
        existing = select(SecurityAlert.id).where(
            SecurityAlert.alert_type == alert_type,
            SecurityAlert.is_resolved.is_(False),
        )
        if user_id is not None:
            existing = existing.where(SecurityAlert.user_id == user_id)
        else:
            existing = existing.where(
                SecurityAlert.user_id.is_(None), SecurityAlert.ip_address == ip_address
            )
        if (await self.session.execute(existing.limit(1))).first() is not None:
            return None

        alert = SecurityAlert(
            event_id=event.id,
            user_id=user_id,
            ip_address=ip_address,
            alert_type=alert_type,
            severity=severity.value,
            message=message,
            is_resolved=False,
        )
        self.session.add(alert)
        await self.session.commit()
        logger.warning(
            f"Security alert raised: {alert_type} - {message}",
            extra={"user_id": user_id, "ip_address": ip_address, "severity": severity.value},
        )
        return alert

    async def stats(self, days: int = 30) -> SecurityStats:
        now = datetime.now(UTC)
        since = now - timedelta(days=days)
        last_day = now - timedelta(hours=24)

        total = (
            await self.session.execute(
                select(func.count(SecurityEvent.id)).where(SecurityEvent.created_at >= since)
            )
        ).scalar() or 0

        by_type_rows = await self.session.execute(
            select(SecurityEvent.event_type, func.count(SecurityEvent.id))
            .where(SecurityEvent.created_at >= since)
            .group_by(SecurityEvent.event_type)
        )
        by_severity_rows = await self.session.execute(
            select(SecurityEvent.severity, func.count(SecurityEvent.id))
            .where(SecurityEvent.created_at >= since)
            .group_by(SecurityEvent.severity)
        )

        failed_logins = (
            await self.session.execute(
                select(func.count(SecurityEvent.id)).where(
                    SecurityEvent.event_type == SecurityEventType.LOGIN_FAILURE.value,
                    SecurityEvent.created_at >= last_day,
                )
            )
        ).scalar() or 0
        critical = (
            await self.session.execute(
                select(func.count(SecurityEvent.id)).where(
                    SecurityEvent.severity.in_(
                        [s.value for s in Severity.at_or_above(Severity.ERROR)]
                    ),
                    SecurityEvent.created_at >= last_day,
                )
            )
        ).scalar() or 0
        unresolved = (
            await self.session.execute(
                select(func.count(SecurityAlert.id)).where(SecurityAlert.is_resolved.is_(False))
            )
        ).scalar() or 0

        return SecurityStats(
            total_events=total,
            events_by_type={row[0]: row[1] for row in by_type_rows.all()},
            events_by_severity={row[0]: row[1] for row in by_severity_rows.all()},
            failed_logins_24h=failed_logins,
            critical_events_24h=critical,
            unresolved_alerts=unresolved,
        )

    async def cleanup_old_events(self, retention_days: int | None = None) -> tuple[int, int]:
        """Delete events past retention and resolved alerts past half of it.

        Events still referenced by an unresolved alert are kept. Returns
        ``(events_deleted, alerts_deleted)``.
        """
        retention_days = retention_days or settings.security_log_retention_days
        now = datetime.now(UTC)
        event_cutoff = now - timedelta(days=retention_days)
        alert_cutoff = now - timedelta(days=max(1, retention_days // 2))

        expired_events = select(SecurityEvent.id).where(SecurityEvent.created_at < event_cutoff)
        alerts_result = await self.session.execute(
            delete(SecurityAlert)
            .where(
                SecurityAlert.is_resolved.is_(True),
                (SecurityAlert.resolved_at < alert_cutoff)
                | SecurityAlert.event_id.in_(expired_events),
            )
            .execution_options(synchronize_session=False)
        )
        events_result = await self.session.execute(
            delete(SecurityEvent)
            .where(
                SecurityEvent.created_at < event_cutoff,
                SecurityEvent.id.not_in(select(SecurityAlert.event_id)),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return events_result.rowcount or 0, alerts_result.rowcount or 0


def _known_ip(ip_address: str | None) -> str | None:
    if not ip_address or ip_address in ("unknown", "system"):
        return None
    return ip_address


class SecurityEventLogger:
    """Fire-and-forget writer for security events.

    Each ``record`` call runs in its own session under
    ``settings.security_log_timeout_seconds``. Failures are reported to the
    operational log and ``None`` is returned; the caller's request proceeds.
    """

    _instance: Optional["SecurityEventLogger"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(self) -> None:
        self._db_session_factory: Callable | None = None
        self._alert_tasks: set[asyncio.Task] = set()

    @classmethod
    def get_instance(cls) -> "SecurityEventLogger":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def set_db_session_factory(self, factory: Callable) -> None:
        """Set the database session factory used for event writes."""
        self._db_session_factory = factory

    @property
    def is_configured(self) -> bool:
        return self._db_session_factory is not None

    async def record(
        self,
        event_type: SecurityEventType | str,
        severity: Severity = Severity.INFO,
        user_id: int | None = None,
        request_meta: RequestMeta | None = None,
        details: dict[str, Any] | None = None,
    ) -> int | None:
        """Append a security event. Returns its id, or None if the write failed."""
        event_type = event_type.value if isinstance(event_type, SecurityEventType) else event_type
        if self._db_session_factory is None:
            logger.warning(f"Security event {event_type} dropped: no session factory configured")
            return None

        try:
            return await asyncio.wait_for(
                self._write(event_type, severity, user_id, request_meta, details),
                timeout=settings.security_log_timeout_seconds,
            )
        except TimeoutError:
            logger.error(f"Security event {event_type} dropped: write timed out")
        except Exception as e:
            logger.error(f"Security event {event_type} dropped: {e}", exc_info=True)
        return None

    async def _write(
        self,
        event_type: str,
        severity: Severity,
        user_id: int | None,
        request_meta: RequestMeta | None,
        details: dict[str, Any] | None,
    ) -> int:
        async with self._db_session_factory() as db:
            event = SecurityEvent(
                user_id=user_id,
                event_type=_UNSAFE_CHARS.sub("", event_type)[:50],
                severity=severity.value,
                ip_address=(request_meta.ip_address if request_meta else "unknown")[:45],
                user_agent=(request_meta.user_agent if request_meta else "unknown")[:255],
                path=request_meta.path if request_meta else None,
                method=request_meta.method if request_meta else None,
                details=sanitize_details(details),
            )
            db.add(event)
            await db.commit()
            event_id = event.id

            alert = await SecurityLogService(db).promote(event)
            if alert is not None:
                self._forward_alert(alert)
            return event_id

    def _forward_alert(self, alert: SecurityAlert) -> None:
        task = asyncio.create_task(
            send_alert(
                title=f"Security alert: {alert.alert_type}",
                message=alert.message,
                severity=alert.severity,
                details={
                    "alert_id": alert.id,
                    "event_id": alert.event_id,
                    "user_id": alert.user_id,
                    "ip_address": alert.ip_address,
                },
            )
        )
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)

    async def log_admin_action(
        self,
        admin_id: int,
        action: str,
        request_meta: RequestMeta | None,
        event_type: SecurityEventType = SecurityEventType.ADMIN_USER_UPDATE,
        success: bool = True,
        details: dict[str, Any] | None = None,
    ) -> int | None:
        """Record an admin-initiated state change, successful or not."""
        return await self.record(
            event_type,
            Severity.WARNING,
            user_id=admin_id,
            request_meta=request_meta,
            details={"action": action, "success": success, **(details or {})},
        )

    async def log_api_access(
        self,
        user_id: int | None,
        request_meta: RequestMeta | None,
        sensitive: bool = False,
    ) -> int | None:
        if sensitive:
            event_type, severity = SecurityEventType.SENSITIVE_DATA_ACCESS, Severity.WARNING
        else:
            event_type, severity = SecurityEventType.API_ACCESS, Severity.INFO
        return await self.record(
            event_type,
            severity,
            user_id=user_id,
            request_meta=request_meta,
            details={"endpoint": request_meta.path if request_meta else None},
        )


def get_security_logger() -> SecurityEventLogger:
    return SecurityEventLogger.get_instance()
