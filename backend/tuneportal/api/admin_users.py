"""Admin user management API."""

import logging

from fastapi import APIRouter, Depends, Path
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.api.deps import get_request_meta, require_admin
from tuneportal.core.database import get_db
from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import SecurityEventType
from tuneportal.schemas.security import RoleChangeRequest, RoleChangeResponse
from tuneportal.services.auth import AuthService
from tuneportal.services.authenticator import AuthContext, AuthPolicy
from tuneportal.services.errors import StoreError, ValidationError
from tuneportal.services.security_log import get_security_logger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/users", tags=["admin-users"])


@router.put("/{user_id}/role", response_model=RoleChangeResponse)
async def change_role(
    body: RoleChangeRequest,
    user_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    meta: RequestMeta = Depends(get_request_meta),
    admin: AuthContext = Depends(require_admin(AuthPolicy.STATEFUL)),
) -> RoleChangeResponse:
    """Grant or revoke the admin role.

    Admins cannot change their own role, so the last admin cannot lock
    everyone out by accident.
    """
    details = {"target_user_id": user_id, "new_role": body.role.value}
    success = False
    try:
        if user_id == admin.user_id:
            raise ValidationError("You cannot change your own role")
        user, previous = await AuthService(db).set_role(user_id, body.role)
        details["previous_role"] = previous.value
        success = True
    except SQLAlchemyError as e:
        raise StoreError("Failed to change role") from e
    finally:
        await get_security_logger().log_admin_action(
            admin.user_id,
            "change_role",
            meta,
            event_type=SecurityEventType.ADMIN_PERMISSION_CHANGE,
            success=success,
            details=details,
        )

    return RoleChangeResponse(user_id=user.id, role=user.role, previous_role=previous)
