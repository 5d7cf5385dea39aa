from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_ROLES = 32
MAX_PERMISSIONS = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credential",
    "forbidden",
    "account_suspended",
    "not_found",
    "rate_limited",
    "attempts_exceeded",
    "validation_error",
    "conflict",
    "store_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_:-]*$")


def _validate_identifier(value: str, kind: str) -> str:
    cleaned = value.strip()
    if not cleaned or len(cleaned) > 64 or not _NAME_PATTERN.match(cleaned):
        raise ValueError(f"{kind} must be lowercase alphanumeric with '_', ':' or '-'")
    return cleaned


class LoginRequest(BaseModel):
    email: str
    # length policy is enforced at password set time, not at login
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SessionResponse(BaseModel):
    user_id: str
    email: str
    roles: List[str]
    business_id: Optional[str] = None
    session_expires_at: datetime
    refresh_expires_at: Optional[datetime] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = "Bearer"


class LoginResponse(BaseModel):
    user_id: str
    mfa_required: bool = False
    otp_id: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    session: Optional[SessionResponse] = None


class OTPSendRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)


class OTPSendResponse(BaseModel):
    otp_id: str
    expires_at: datetime


class OTPVerifyRequest(BaseModel):
    otp_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=4, max_length=10)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned.isdigit():
            raise ValueError("code must be numeric")
        return cleaned


class InviteRequest(BaseModel):
    email: str
    roles: List[str] = Field(..., min_length=1, max_length=MAX_ROLES)
    name: str = Field(default="", max_length=128)
    business_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("roles")
    @classmethod
    def _validate_roles(cls, value: List[str]) -> List[str]:
        return [_validate_identifier(role, "role") for role in value]


class InviteResponse(BaseModel):
    user_id: str
    email: str
    expires_at: datetime
    # only echoed outside production so operators can test without SMTP
    invite_url: Optional[str] = None


class InviteVerifyResponse(BaseModel):
    valid: bool
    user_id: str
    email: str


class SetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=16, max_length=256)
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PermissionsResponse(BaseModel):
    user_id: str
    roles: List[str]
    permissions: List[str]
    is_super_admin: bool = False


class RoleBindingRequest(BaseModel):
    permissions: List[str] = Field(default_factory=list, max_length=MAX_PERMISSIONS)
    business_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("permissions")
    @classmethod
    def _validate_permissions(cls, value: List[str]) -> List[str]:
        return [_validate_identifier(tag, "permission") for tag in value]


class RoleBindingResponse(BaseModel):
    role: str
    business_id: Optional[str] = None
    permissions: List[str]
    updated_at: datetime


class UserResponse(BaseModel):
    id: str
    email: str
    name: str = ""
    roles: List[str]
    status: str
    business_id: Optional[str] = None
    mfa_enabled: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None
