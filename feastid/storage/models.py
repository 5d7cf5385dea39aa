from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class OTPStatus(str, Enum):
    """Lifecycle of a login challenge; everything except ISSUED is terminal."""

    ISSUED = "issued"
    VERIFIED = "verified"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    SUPERSEDED = "superseded"


# Scope key used for platform-level role bindings
GLOBAL_SCOPE = "*"


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    hashed_password: Optional[str] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)
    status: UserStatus = UserStatus.PENDING
    mfa_enabled: bool = False
    business_id: Optional[str] = None
    invited_by: Optional[str] = None
    invite_token: Optional[str] = None
    invite_expiry: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class OTPRecord:
    id: str
    email: str
    code_hash: str
    expires_at: datetime
    max_attempts: int
    attempts: int = 0
    status: OTPStatus = OTPStatus.ISSUED
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.status == OTPStatus.ISSUED

    @classmethod
    def new(
        cls,
        email: str,
        code_hash: str,
        *,
        expires_at: datetime,
        max_attempts: int,
    ) -> "OTPRecord":
        return cls(
            id=uuid.uuid4().hex,
            email=email,
            code_hash=code_hash,
            expires_at=expires_at,
            max_attempts=max_attempts,
        )


@dataclass
class RolePermissionBinding:
    role: str
    permissions: FrozenSet[str]
    business_id: str = GLOBAL_SCOPE
    updated_at: datetime = field(default_factory=utcnow)
