"""Liveness endpoint for load balancers and container orchestration."""

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from tuneportal.core import check_db_connection, settings
from tuneportal.services.security_log import get_security_logger

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    security_log: str
    rate_limiting: bool


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Database unreachable"}},
)
async def health_check(response: Response) -> HealthResponse:
    # Security events are written to the same database, so it gates overall health
    db_ok = await check_db_connection()
    if not db_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if db_ok else "unhealthy",
        version=settings.app_version,
        database="connected" if db_ok else "disconnected",
        security_log="ready" if get_security_logger().is_configured else "unconfigured",
        rate_limiting=settings.rate_limit_enabled,
    )
