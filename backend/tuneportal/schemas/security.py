"""Pydantic schemas for the admin security API.

Field names are serialized in camelCase for the dashboard client; either form
is accepted on input.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tuneportal.models import Role


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SecurityEventResponse(CamelModel):
    id: int
    user_id: int | None = None
    username: str | None = None
    email: str | None = None
    event_type: str
    severity: str
    ip_address: str
    user_agent: str
    path: str | None = None
    method: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


class SecurityLogsResponse(CamelModel):
    logs: list[SecurityEventResponse]
    total: int


class SecurityAlertResponse(CamelModel):
    id: int
    event_id: int
    user_id: int | None = None
    ip_address: str | None = None
    alert_type: str
    severity: str
    message: str
    is_resolved: bool
    resolved_by: int | None = None
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime


class SecurityStats(CamelModel):
    total_events: int
    events_by_type: dict[str, int]
    events_by_severity: dict[str, int]
    # Explicit aliases: the generator would render "24H"
    failed_logins_24h: int = Field(alias="failedLogins24h")
    critical_events_24h: int = Field(alias="criticalEvents24h")
    unresolved_alerts: int


class SecurityStatsResponse(CamelModel):
    stats: SecurityStats
    unresolved_alerts: list[SecurityAlertResponse]


class ResolveAlertRequest(CamelModel):
    alert_id: int
    notes: str | None = Field(None, max_length=2000)


class SuccessResponse(CamelModel):
    success: bool = True


class ActiveSessionResponse(CamelModel):
    id: str
    user_id: int
    username: str
    email: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class ActiveSessionsResponse(CamelModel):
    sessions: list[ActiveSessionResponse]
    total: int


class TerminateSessionRequest(CamelModel):
    reason: str | None = Field(None, max_length=500)


class TerminateSessionResponse(CamelModel):
    success: bool = True
    terminated_sessions: int
    user_id: int


class BanRequest(CamelModel):
    reason: str = Field(..., min_length=1, max_length=500)
    duration: str = Field(..., min_length=1, max_length=32)


class BanResponse(CamelModel):
    success: bool = True
    user_id: int
    ban_expires_at: datetime | None = None
    sessions_terminated: int


class RoleChangeRequest(CamelModel):
    role: Role


class RoleChangeResponse(CamelModel):
    success: bool = True
    user_id: int
    role: Role
    previous_role: Role
