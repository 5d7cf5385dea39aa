from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from feastid.config import Settings
from feastid.logging import email_digest, get_logger
from feastid.service.errors import ConflictError, NotFoundError
from feastid.storage.models import User, UserStatus

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InviteError(str, Enum):
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    ALREADY_CONSUMED = "already_consumed"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class InviteLink:
    url: str
    token: str
    user_id: str
    expires_at: datetime


@dataclass(frozen=True)
class InviteCheck:
    valid: bool
    error: Optional[InviteError] = None
    user_id: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class InviteConsumption:
    success: bool
    error: Optional[InviteError] = None
    user: Optional[User] = None


class MagicLinkEngine:
    """Single-use onboarding tokens stored on the pending user record."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or _utcnow

    def build_url(self, token: str) -> str:
        base = self.settings.app_base_url.rstrip("/")
        path = "/" + self.settings.invite_path.lstrip("/")
        return f"{base}{path}?{urlencode({'token': token})}"

    def issue_invite(self, user_id: str, email: str) -> InviteLink:
        """Write a fresh token onto a pending user, replacing any earlier one."""
        token = secrets.token_urlsafe(32)
        expires_at = self._clock() + timedelta(hours=self.settings.invite_ttl_hours)
        updated = self.store.update_user(
            user_id,
            {"invite_token": token, "invite_expiry": expires_at},
            expected_status=UserStatus.PENDING,
        )
        if updated is None:
            if self.store.get_user(user_id) is None:
                raise NotFoundError("user not found", detail={"user_id": user_id})
            raise ConflictError(
                "only pending users can be invited", detail={"user_id": user_id}
            )
        logger.info(
            "invite_issued",
            user_id=user_id,
            email_hash=email_digest(email),
            expires_at=expires_at.isoformat(),
        )
        return InviteLink(
            url=self.build_url(token), token=token, user_id=user_id, expires_at=expires_at
        )

    def _expired(self, user: User) -> bool:
        return user.invite_expiry is None or self._clock() >= user.invite_expiry

    def verify_invite(self, token: str) -> InviteCheck:
        """Look the token up without consuming it."""
        user = self.store.get_user_by_invite_token(token) if token else None
        if user is None:
            return InviteCheck(valid=False, error=InviteError.INVALID_TOKEN)
        if self._expired(user):
            logger.info("invite_expired", user_id=user.id)
            return InviteCheck(
                valid=False, error=InviteError.EXPIRED, user_id=user.id, email=user.email
            )
        return InviteCheck(valid=True, user_id=user.id, email=user.email)

    def consume_invite(
        self,
        user_id: str,
        *,
        token: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> InviteConsumption:
        """Clear the token, activate the user and apply ``fields`` in one conditional write.

        The write only lands if the stored token still equals the one read here,
        so of two concurrent calls exactly one succeeds; the loser reports
        ``ALREADY_CONSUMED`` (or ``CONFLICT`` if the token was replaced instead).
        """
        user = self.store.get_user(user_id)
        if user is None:
            return InviteConsumption(success=False, error=InviteError.INVALID_TOKEN)
        if user.invite_token is None:
            error = (
                InviteError.ALREADY_CONSUMED
                if user.status == UserStatus.ACTIVE
                else InviteError.INVALID_TOKEN
            )
            return InviteConsumption(success=False, error=error)
        if token is not None and not hmac.compare_digest(
            token.encode(), user.invite_token.encode()
        ):
            return InviteConsumption(success=False, error=InviteError.INVALID_TOKEN)
        if self._expired(user):
            return InviteConsumption(success=False, error=InviteError.EXPIRED)

        changes: Dict[str, Any] = dict(fields or {})
        changes.update(
            {"invite_token": None, "invite_expiry": None, "status": UserStatus.ACTIVE}
        )
        updated = self.store.update_user(
            user_id, changes, expected_invite_token=user.invite_token
        )
        if updated is None:
            current = self.store.get_user(user_id)
            if current is not None and current.invite_token is None:
                error = InviteError.ALREADY_CONSUMED
            else:
                error = InviteError.CONFLICT
            logger.warning("invite_consume_lost_race", user_id=user_id, error_code=error.value)
            return InviteConsumption(success=False, error=error)
        logger.info("invite_consumed", user_id=user_id)
        return InviteConsumption(success=True, user=updated)
