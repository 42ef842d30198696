"""Tests for the security event log, alert promotion and resolution."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from tuneportal.core.config import settings
from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import SecurityAlert, SecurityEvent, SecurityEventType, Severity
from tuneportal.services.errors import NotFoundError
from tuneportal.services.security_log import (
    MAX_QUERY_LIMIT,
    EventFilters,
    SecurityLogService,
    get_security_logger,
    sanitize_details,
    sanitize_value,
)

META = RequestMeta(ip_address="203.0.113.7", user_agent="pytest", path="/api/test", method="GET")


async def _add_events(db_session, count: int, **fields) -> list[SecurityEvent]:
    """Insert events directly, oldest first, one second apart."""
    start = fields.pop("start", datetime.now(UTC) - timedelta(hours=1))
    defaults = {
        "event_type": SecurityEventType.API_ACCESS.value,
        "severity": Severity.INFO.value,
        "ip_address": "198.51.100.1",
        "user_agent": "pytest",
    }
    defaults.update(fields)
    events = [
        SecurityEvent(created_at=start + timedelta(seconds=i), **defaults) for i in range(count)
    ]
    db_session.add_all(events)
    await db_session.commit()
    return events


async def _alerts(db_session) -> list[SecurityAlert]:
    result = await db_session.execute(
        select(SecurityAlert)
        .order_by(SecurityAlert.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestSanitize:
    """Tests for log-injection sanitising."""

    def test_strips_control_and_markup_characters(self):
        assert sanitize_value("bad\r\nuser<script>\u2028\x00") == "baduserscript"

    def test_truncates_long_strings(self):
        assert len(sanitize_value("a" * 5000)) == 1000

    def test_redacts_sensitive_keys(self):
        details = sanitize_details(
            {"username": "driver", "password": "hunter2", "reset_token": "abc", "nested": {"api_key": "k"}}
        )
        assert details["username"] == "driver"
        assert details["password"] == "[REDACTED]"
        assert details["reset_token"] == "[REDACTED]"
        assert details["nested"] == {"api_key": "[REDACTED]"}

    def test_keeps_scalars_and_serialises_datetimes(self):
        when = datetime(2030, 1, 1, tzinfo=UTC)
        details = sanitize_details({"count": 3, "ok": True, "none": None, "when": when})
        assert details == {"count": 3, "ok": True, "none": None, "when": when.isoformat()}

    def test_none_passes_through(self):
        assert sanitize_details(None) is None


class TestEventFilters:
    def test_limit_is_capped(self):
        assert EventFilters(limit=200).limit == MAX_QUERY_LIMIT
        assert EventFilters(limit=0).limit == 1
        assert EventFilters(offset=-5).offset == 0


class TestSecurityEventLogger:
    """Tests for the fire-and-forget writer."""

    @pytest.mark.asyncio
    async def test_record_persists_event(self, db_session, regular_user):
        event_id = await get_security_logger().record(
            SecurityEventType.LOGIN_SUCCESS,
            user_id=regular_user.id,
            request_meta=META,
            details={"password": "should-not-appear", "note": "line\nbreak"},
        )
        assert event_id is not None

        event = (
            await db_session.execute(select(SecurityEvent).where(SecurityEvent.id == event_id))
        ).scalar_one()
        assert event.event_type == "login_success"
        assert event.severity == "info"
        assert event.ip_address == "203.0.113.7"
        assert event.path == "/api/test"
        assert event.method == "GET"
        assert event.details == {"password": "[REDACTED]", "note": "linebreak"}

    @pytest.mark.asyncio
    async def test_record_without_request_meta(self, db_session):
        event_id = await get_security_logger().record("suspicious_activity", Severity.WARNING)
        event = (
            await db_session.execute(select(SecurityEvent).where(SecurityEvent.id == event_id))
        ).scalar_one()
        assert event.ip_address == "unknown"
        assert event.user_id is None

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, session_factory):
        security_logger = get_security_logger()

        def broken_factory():
            raise RuntimeError("database unavailable")

        security_logger.set_db_session_factory(broken_factory)
        try:
            assert await security_logger.record(SecurityEventType.LOGOUT) is None
        finally:
            security_logger.set_db_session_factory(session_factory)

    @pytest.mark.asyncio
    async def test_slow_write_times_out(self, session_factory):
        security_logger = get_security_logger()

        async def slow_write(*args, **kwargs):
            await asyncio.sleep(5)

        with patch.object(settings, "security_log_timeout_seconds", 0.05):
            with patch.object(security_logger, "_write", slow_write):
                assert await security_logger.record(SecurityEventType.LOGOUT) is None

    @pytest.mark.asyncio
    async def test_no_factory_drops_event(self, session_factory):
        security_logger = get_security_logger()
        security_logger.set_db_session_factory(None)
        try:
            assert await security_logger.record(SecurityEventType.LOGOUT) is None
        finally:
            security_logger.set_db_session_factory(session_factory)

    @pytest.mark.asyncio
    async def test_log_admin_action(self, db_session, admin_user):
        event_id = await get_security_logger().log_admin_action(
            admin_user.id,
            "ban_user",
            META,
            success=False,
            details={"target_user_id": 9},
        )
        event = (
            await db_session.execute(select(SecurityEvent).where(SecurityEvent.id == event_id))
        ).scalar_one()
        assert event.event_type == "admin_user_update"
        assert event.severity == "warning"
        assert event.user_id == admin_user.id
        assert event.details == {"action": "ban_user", "success": False, "target_user_id": 9}


class TestQuery:
    """Tests for SecurityLogService.query."""

    @pytest.mark.asyncio
    async def test_newest_first_with_owner(self, db_session, regular_user):
        events = await _add_events(db_session, 3, user_id=regular_user.id)

        records, total = await SecurityLogService(db_session).query(EventFilters())
        assert total == 3
        assert [r.event.id for r in records] == [e.id for e in reversed(events)]
        assert records[0].username == "driver"
        assert records[0].email == "driver@example.com"

    @pytest.mark.asyncio
    async def test_limit_never_exceeds_cap(self, db_session):
        await _add_events(db_session, 120, severity=Severity.CRITICAL.value)

        records, total = await SecurityLogService(db_session).query(
            EventFilters(severity=Severity.CRITICAL, limit=200)
        )
        assert len(records) == 100
        assert total == 120

    @pytest.mark.asyncio
    async def test_pagination(self, db_session):
        await _add_events(db_session, 5)
        service = SecurityLogService(db_session)

        page1, total = await service.query(EventFilters(limit=2))
        page3, _ = await service.query(EventFilters(limit=2, offset=4))
        assert total == 5
        assert len(page1) == 2
        assert len(page3) == 1

    @pytest.mark.asyncio
    async def test_filters(self, db_session, regular_user, admin_user):
        await _add_events(db_session, 2, user_id=regular_user.id)
        await _add_events(
            db_session,
            1,
            user_id=admin_user.id,
            event_type="admin_user_update",
            severity=Severity.WARNING.value,
        )
        await _add_events(db_session, 1, event_type="suspicious_activity", severity="error")
        service = SecurityLogService(db_session)

        _, by_user = await service.query(EventFilters(user_id=regular_user.id))
        _, by_type = await service.query(EventFilters(event_type="admin_user_update"))
        _, exact = await service.query(EventFilters(severity=Severity.WARNING))
        _, at_least = await service.query(EventFilters(min_severity=Severity.WARNING))
        assert (by_user, by_type, exact, at_least) == (2, 1, 1, 2)

    @pytest.mark.asyncio
    async def test_date_range(self, db_session):
        now = datetime.now(UTC)
        await _add_events(db_session, 2, start=now - timedelta(days=10))
        await _add_events(db_session, 3, start=now - timedelta(hours=1))

        _, total = await SecurityLogService(db_session).query(
            EventFilters(start_date=now - timedelta(days=1), end_date=now)
        )
        assert total == 3


class TestAlertPromotion:
    """Events are promoted to alerts by severity or by repetition."""

    @pytest.mark.asyncio
    async def test_high_severity_event_raises_alert(self, db_session, regular_user):
        event_id = await get_security_logger().record(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            Severity.CRITICAL,
            user_id=regular_user.id,
            request_meta=META,
        )

        alerts = await _alerts(db_session)
        assert len(alerts) == 1
        assert alerts[0].event_id == event_id
        assert alerts[0].alert_type == "suspicious_activity"
        assert alerts[0].severity == "critical"
        assert alerts[0].user_id == regular_user.id
        assert alerts[0].is_resolved is False

    @pytest.mark.asyncio
    async def test_low_severity_event_does_not(self, db_session):
        await get_security_logger().record(SecurityEventType.API_ACCESS, Severity.WARNING)
        assert await _alerts(db_session) == []

    @pytest.mark.asyncio
    async def test_unresolved_alert_is_not_duplicated(self, db_session, regular_user, admin_user):
        security_logger = get_security_logger()
        for _ in range(3):
            await security_logger.record(
                SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.ERROR, user_id=regular_user.id
            )
        alerts = await _alerts(db_session)
        assert len(alerts) == 1

        await SecurityLogService(db_session).resolve_alert(alerts[0].id, admin_user.id, "Checked")
        await security_logger.record(
            SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.ERROR, user_id=regular_user.id
        )
        assert len(await _alerts(db_session)) == 2

    @pytest.mark.asyncio
    async def test_repeated_failures_raise_one_alert(self, db_session, regular_user):
        security_logger = get_security_logger()
        for _ in range(settings.alert_repeat_threshold - 1):
            await security_logger.record(
                SecurityEventType.LOGIN_FAILURE,
                Severity.WARNING,
                user_id=regular_user.id,
                request_meta=META,
            )
        assert await _alerts(db_session) == []

        for _ in range(3):
            await security_logger.record(
                SecurityEventType.LOGIN_FAILURE,
                Severity.WARNING,
                user_id=regular_user.id,
                request_meta=META,
            )

        alerts = await _alerts(db_session)
        assert len(alerts) == 1
        assert alerts[0].alert_type == "multiple_failed_attempts"
        assert alerts[0].severity == "warning"
        assert alerts[0].user_id == regular_user.id

    @pytest.mark.asyncio
    async def test_repeats_counted_per_ip_for_anonymous_events(self, db_session):
        security_logger = get_security_logger()
        for _ in range(settings.alert_repeat_threshold):
            await security_logger.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED, Severity.WARNING, request_meta=META
            )

        alerts = await _alerts(db_session)
        assert len(alerts) == 1
        assert alerts[0].alert_type == "repeated_rate_limit_exceeded"
        assert alerts[0].user_id is None
        assert alerts[0].ip_address == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_alert_is_forwarded_to_webhook(self, db_session):
        security_logger = get_security_logger()
        with patch(
            "tuneportal.services.security_log.send_alert", AsyncMock(return_value=True)
        ) as mock_send:
            await security_logger.record(
                SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.CRITICAL, request_meta=META
            )
            for task in list(security_logger._alert_tasks):
                await task

        mock_send.assert_awaited_once()
        kwargs = mock_send.await_args.kwargs
        assert kwargs["title"] == "Security alert: suspicious_activity"
        assert kwargs["severity"] == "critical"


class TestResolveAlert:
    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, db_session, admin_user):
        await get_security_logger().record(SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.ERROR)
        alert_id = (await _alerts(db_session))[0].id
        service = SecurityLogService(db_session)

        assert await service.resolve_alert(alert_id, admin_user.id, "False positive") is True
        assert await service.resolve_alert(alert_id, admin_user.id, "Second try") is False

        alert = (await _alerts(db_session))[0]
        assert alert.is_resolved is True
        assert alert.resolved_by == admin_user.id
        assert alert.resolution_notes == "False positive"
        assert alert.resolved_at is not None
        assert await service.unresolved_alerts() == []

    @pytest.mark.asyncio
    async def test_resolve_unknown_alert(self, db_session, admin_user):
        with pytest.raises(NotFoundError):
            await SecurityLogService(db_session).resolve_alert(12345, admin_user.id, None)


class TestStatsAndRetention:
    @pytest.mark.asyncio
    async def test_stats(self, db_session):
        await _add_events(db_session, 3, event_type="login_failure", severity="warning")
        await _add_events(db_session, 1, event_type="suspicious_activity", severity="critical")
        await _add_events(
            db_session, 2, event_type="login_failure", start=datetime.now(UTC) - timedelta(days=60)
        )

        stats = await SecurityLogService(db_session).stats(days=30)
        assert stats.total_events == 4
        assert stats.events_by_type == {"login_failure": 3, "suspicious_activity": 1}
        assert stats.events_by_severity == {"warning": 3, "critical": 1}
        assert stats.failed_logins_24h == 3
        assert stats.critical_events_24h == 1
        assert stats.unresolved_alerts == 0

    @pytest.mark.asyncio
    async def test_cleanup_keeps_events_behind_open_alerts(self, db_session):
        old = datetime.now(UTC) - timedelta(days=400)
        expired = await _add_events(db_session, 3, start=old)
        await _add_events(db_session, 2)

        db_session.add(
            SecurityAlert(
                event_id=expired[0].id,
                alert_type="suspicious_activity",
                severity="error",
                message="still open",
                is_resolved=False,
            )
        )
        await db_session.commit()

        events_deleted, alerts_deleted = await SecurityLogService(db_session).cleanup_old_events(
            retention_days=365
        )
        assert (events_deleted, alerts_deleted) == (2, 0)

        remaining = (await db_session.execute(select(SecurityEvent.id))).scalars().all()
        assert len(remaining) == 3
        assert expired[0].id in remaining
