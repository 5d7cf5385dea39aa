"""Signed session and refresh credentials.

Both credentials are HS256 JWTs carrying a ``token_type`` claim, so one can
never stand in for the other. ``verify`` trusts the embedded claims without
touching the store; role changes and suspensions only take effect when the
pair is refreshed or the session runs out.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, FrozenSet, Iterable, List, Optional

from feastid.config import Settings
from feastid.logging import get_logger
from feastid.service.errors import AuthenticationError
from feastid.storage.models import UserStatus

logger = get_logger(__name__)

SESSION_KIND = "session"
REFRESH_KIND = "refresh"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionErrorKind(str, Enum):
    MISSING = "missing"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    WRONG_KIND = "wrong_kind"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_NOT_FOUND = "account_not_found"


class SessionError(AuthenticationError):
    """Credential rejected; ``kind`` says why (kept for logs, not for callers)."""

    def __init__(self, kind: SessionErrorKind, message: Optional[str] = None) -> None:
        if kind == SessionErrorKind.ACCOUNT_SUSPENDED:
            super().__init__(
                message or "account is not active",
                status_code=403,
                error_code="account_suspended",
            )
        else:
            super().__init__(message or "authentication required")
        self.kind = kind


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: str
    roles: FrozenSet[str]
    business_id: Optional[str]
    issued_at: datetime
    expires_at: datetime
    kind: str = SESSION_KIND
    token_id: Optional[str] = None


@dataclass(frozen=True)
class SessionTokens:
    session: str
    refresh_token: str
    claims: SessionClaims
    refresh_expires_at: datetime


@dataclass(frozen=True)
class CookieSpec:
    """Instructions for one ``Set-Cookie`` header."""

    name: str
    value: str
    max_age: int
    httponly: bool = True
    secure: bool = True
    samesite: str = "strict"
    path: str = "/"


class SessionManager:
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
        self._secret = settings.jwt_secret.encode()
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    # token codec
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Return the verified payload or raise ``SessionError(MALFORMED)``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise SessionError(SessionErrorKind.MALFORMED)

        # reject anything but HS256 so the header cannot pick the algorithm
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise SessionError(SessionErrorKind.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise SessionError(SessionErrorKind.MALFORMED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise SessionError(SessionErrorKind.MALFORMED)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise SessionError(SessionErrorKind.MALFORMED)
        if not isinstance(payload, dict):
            raise SessionError(SessionErrorKind.MALFORMED)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise SessionError(SessionErrorKind.MALFORMED)
        if payload.get("aud") != self.settings.jwt_audience:
            raise SessionError(SessionErrorKind.MALFORMED)
        for claim in ("sub", "exp", "iat", "token_type"):
            if claim not in payload:
                raise SessionError(SessionErrorKind.MALFORMED)
        return payload

    # public operations
    def _mint(
        self,
        kind: str,
        ttl: timedelta,
        *,
        user_id: str,
        email: str,
        roles: FrozenSet[str],
        business_id: Optional[str],
        now: datetime,
    ) -> tuple[str, SessionClaims]:
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + ttl
        token_id = uuid.uuid4().hex
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "roles": sorted(roles),
            "bid": business_id,
            "token_type": kind,
            "jti": token_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        claims = SessionClaims(
            user_id=user_id,
            email=email,
            roles=roles,
            business_id=business_id,
            issued_at=issued_at,
            expires_at=expires_at,
            kind=kind,
            token_id=token_id,
        )
        return self._encode_jwt(payload), claims

    def issue(
        self,
        user_id: str,
        email: str,
        roles: Iterable[str],
        business_id: Optional[str] = None,
    ) -> SessionTokens:
        role_set = frozenset(roles)
        now = self._clock()
        session, claims = self._mint(
            SESSION_KIND,
            timedelta(minutes=self.settings.session_ttl_minutes),
            user_id=user_id,
            email=email,
            roles=role_set,
            business_id=business_id,
            now=now,
        )
        refresh, refresh_claims = self._mint(
            REFRESH_KIND,
            timedelta(minutes=self.settings.refresh_ttl_minutes),
            user_id=user_id,
            email=email,
            roles=role_set,
            business_id=business_id,
            now=now,
        )
        logger.info(
            "session_issued",
            user_id=user_id,
            roles=sorted(role_set),
            business_id=business_id,
            expires_at=claims.expires_at.isoformat(),
        )
        return SessionTokens(
            session=session,
            refresh_token=refresh,
            claims=claims,
            refresh_expires_at=refresh_claims.expires_at,
        )

    def verify(
        self, credential: Optional[str], *, expected_kind: str = SESSION_KIND
    ) -> SessionClaims:
        """Decode and check a credential without consulting the store."""
        if not credential:
            raise SessionError(SessionErrorKind.MISSING)
        payload = self._decode_jwt(credential)
        if payload.get("token_type") != expected_kind:
            raise SessionError(SessionErrorKind.WRONG_KIND)
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            raise SessionError(SessionErrorKind.MALFORMED)
        if self._clock() >= expires_at + self._leeway:
            raise SessionError(SessionErrorKind.EXPIRED)
        roles = payload.get("roles") or []
        if not isinstance(roles, list):
            raise SessionError(SessionErrorKind.MALFORMED)
        return SessionClaims(
            user_id=str(payload["sub"]),
            email=str(payload.get("email") or ""),
            roles=frozenset(str(r) for r in roles),
            business_id=payload.get("bid"),
            issued_at=issued_at,
            expires_at=expires_at,
            kind=expected_kind,
            token_id=payload.get("jti"),
        )

    def refresh(self, refresh_credential: Optional[str]) -> SessionTokens:
        """Mint a new pair from a refresh credential, re-reading roles and status."""
        claims = self.verify(refresh_credential, expected_kind=REFRESH_KIND)
        user = self.store.get_user(claims.user_id)
        if user is None:
            logger.warning("session_refresh_unknown_user", user_id=claims.user_id)
            raise SessionError(SessionErrorKind.ACCOUNT_NOT_FOUND)
        if user.status != UserStatus.ACTIVE:
            logger.warning(
                "session_refresh_inactive_user",
                user_id=user.id,
                status=user.status.value,
            )
            raise SessionError(SessionErrorKind.ACCOUNT_SUSPENDED)
        return self.issue(user.id, user.email, user.roles, user.business_id)

    def cookies(self, tokens: SessionTokens) -> List[CookieSpec]:
        secure = self.settings.secure_cookies
        return [
            CookieSpec(
                name=self.settings.session_cookie_name,
                value=tokens.session,
                max_age=self.settings.session_ttl_minutes * 60,
                secure=secure,
            ),
            CookieSpec(
                name=self.settings.refresh_cookie_name,
                value=tokens.refresh_token,
                max_age=self.settings.refresh_ttl_minutes * 60,
                secure=secure,
            ),
        ]

    def revoke(self) -> List[CookieSpec]:
        """Expired replacements for both cookies.

        Nothing is recorded server-side: a copied session credential stays
        valid until its own expiry.
        """
        secure = self.settings.secure_cookies
        return [
            CookieSpec(name=name, value="", max_age=0, secure=secure)
            for name in (
                self.settings.session_cookie_name,
                self.settings.refresh_cookie_name,
            )
        ]
