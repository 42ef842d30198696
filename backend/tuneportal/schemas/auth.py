"""Pydantic schemas for authentication API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from tuneportal.models import Role


class LoginRequest(BaseModel):
    """Request for login."""

    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)


class UserResponse(BaseModel):
    """Principal plus derived account fields."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: Role
    credits: int
    email_verified: bool
    is_banned: bool
    ban_reason: str | None = None
    ban_expires_at: datetime | None = None


class LoginResponse(BaseModel):
    success: bool = True
    user: UserResponse


class CurrentUserResponse(BaseModel):
    user: UserResponse


class RefreshResponse(BaseModel):
    success: bool = True
    refreshed: bool


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class SessionStatusResponse(BaseModel):
    terminated: bool
    reason: str | None = None


class TerminationReasonResponse(BaseModel):
    reason: str


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class RegisterResponse(BaseModel):
    success: bool = True
    user: UserResponse
    email_verification_sent: bool


class ResendVerificationRequest(BaseModel):
    email: EmailStr
