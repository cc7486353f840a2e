from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.customer import EMAIL_PATTERN


class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"


class BillingUser(BaseModel):
    """Operator allowed into the billing admin.

    ``mfa_secret`` is never serialized; it only travels between the service
    and its storage.
    """

    id: str
    email: str
    full_name: str
    role: UserRole = UserRole.ADMIN
    is_active: bool = True
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = Field(default=None, exclude=True)
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None


class UserCreate(BaseModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    full_name: str = Field(..., min_length=2, max_length=100)
    role: UserRole = UserRole.ADMIN

    @field_validator("email")
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("full_name")
    def _strip_name(cls, value: str) -> str:
        return value.strip()


class UserUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class UserListResponse(BaseModel):
    total: int
    items: List[BillingUser]


class MfaEnrollment(BaseModel):
    """Shown once while enrolling; the code must be confirmed before MFA is on."""

    secret: str
    formatted_secret: str
    provisioning_uri: str
    backup_codes: List[str]


class MfaCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=12)


class MfaVerification(BaseModel):
    verified: bool


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=255)
    mfa_code: Optional[str] = None


class LoginResult(BaseModel):
    user: BillingUser
    mfa_verified: bool


class LoginAttempt(BaseModel):
    id: str
    billing_user_id: Optional[str] = None
    email: str
    login_successful: bool
    mfa_verified: Optional[bool] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
