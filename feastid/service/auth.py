"""Login, onboarding and account administration flows.

Composes the credential engines; every identity decision here is made from
store records or verified session claims, never from client-supplied ids.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from feastid.config import Settings
from feastid.logging import email_digest, get_logger
from feastid.service.authorization import PERMISSIONS, AuthorizationEngine
from feastid.service.email import EmailService
from feastid.service.errors import (
    AccountSuspendedError,
    AttemptsExceededError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from feastid.service.gate import AuthenticatedContext
from feastid.service.magic_link import InviteCheck, InviteError, InviteLink, MagicLinkEngine
from feastid.service.otp import OTPEngine, OTPError
from feastid.service.passwords import PasswordManager
from feastid.service.sessions import SessionManager, SessionTokens
from feastid.storage.common import normalize_email
from feastid.storage.errors import ConstraintViolation
from feastid.storage.models import User, UserStatus

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LoginResult:
    """Either a session pair, or an MFA challenge that must be completed first."""

    user_id: str
    tokens: Optional[SessionTokens] = None
    mfa_otp_id: Optional[str] = None
    mfa_expires_at: Optional[datetime] = None

    @property
    def mfa_required(self) -> bool:
        return self.tokens is None


@dataclass(frozen=True)
class LoginCodeRequest:
    otp_id: str
    expires_at: datetime


class AuthService:
    def __init__(
        self,
        store,
        settings: Settings,
        *,
        passwords: PasswordManager,
        otp: OTPEngine,
        magic_links: MagicLinkEngine,
        sessions: SessionManager,
        authz: AuthorizationEngine,
        email: EmailService,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.otp = otp
        self.magic_links = magic_links
        self.sessions = sessions
        self.authz = authz
        self.email = email
        self._clock = clock or _utcnow
        self._dummy_hash: Optional[str] = None

    def _burn_password_check(self, password: str) -> None:
        # unknown accounts still pay for one verification
        if self._dummy_hash is None:
            self._dummy_hash = self.passwords.hash(secrets.token_urlsafe(16))
        self.passwords.verify(password, self._dummy_hash)

    def _start_session(self, user: User) -> SessionTokens:
        self.store.update_user(user.id, {"last_login_at": self._clock()})
        return self.sessions.issue(user.id, user.email, user.roles, user.business_id)

    # password login
    def login(self, email: str, password: str) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if user is None or not user.hashed_password:
            self._burn_password_check(password)
            logger.info("login_failed", email_hash=email_digest(email), reason="unknown_user")
            raise InvalidCredentialError("invalid email or password")
        if not self.passwords.verify(password, user.hashed_password):
            logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentialError("invalid email or password")
        if user.status != UserStatus.ACTIVE:
            logger.warning("login_inactive_account", user_id=user.id, status=user.status.value)
            raise AccountSuspendedError("account is not active")

        if self.passwords.needs_rehash(user.hashed_password):
            self.store.update_user(user.id, {"hashed_password": self.passwords.hash(password)})
            logger.info("password_rehashed", user_id=user.id)

        if user.mfa_enabled:
            challenge = self.otp.issue(user.email)
            self.email.send_login_code(user.email, challenge.code, challenge.expires_at)
            logger.info("login_mfa_challenge", user_id=user.id, otp_id=challenge.otp_id)
            return LoginResult(
                user_id=user.id,
                mfa_otp_id=challenge.otp_id,
                mfa_expires_at=challenge.expires_at,
            )

        tokens = self._start_session(user)
        logger.info("login_succeeded", user_id=user.id, method="password")
        return LoginResult(user_id=user.id, tokens=tokens)

    # passcode login
    def request_login_code(self, email: str) -> LoginCodeRequest:
        """Send a sign-in code; unknown or inactive emails get an indistinguishable decoy."""
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("a valid email is required")
        wait = self.otp.resend_available_in(normalized)
        if wait > 0:
            raise RateLimitedError(
                "please wait before requesting another code",
                retry_after=wait,
                detail={"retry_after": wait},
            )
        user = self.store.get_user_by_email(normalized)
        # decoys are stored like real challenges so cooldown and verify answer alike
        challenge = self.otp.issue(normalized)
        if user is None or user.status != UserStatus.ACTIVE:
            logger.info("otp_decoy_issued", email_hash=email_digest(normalized))
            return LoginCodeRequest(otp_id=challenge.otp_id, expires_at=challenge.expires_at)
        self.email.send_login_code(user.email, challenge.code, challenge.expires_at)
        return LoginCodeRequest(otp_id=challenge.otp_id, expires_at=challenge.expires_at)

    def verify_login_code(self, otp_id: str, code: str) -> SessionTokens:
        result = self.otp.verify(otp_id, code)
        if not result.valid:
            if result.error == OTPError.ATTEMPTS_EXCEEDED:
                raise AttemptsExceededError(
                    "too many incorrect attempts; request a new code"
                )
            if result.error == OTPError.EXPIRED:
                raise InvalidCredentialError(
                    "code expired; request a new code", detail={"reason": "expired"}
                )
            detail = {"reason": (result.error or OTPError.NOT_FOUND).value}
            if result.error == OTPError.INVALID_CODE:
                detail["attempts_remaining"] = max(
                    0, self.settings.otp_max_attempts - result.attempts
                )
            raise InvalidCredentialError("invalid code", detail=detail)

        user = self.store.get_user_by_email(result.email or "")
        if user is None:
            raise InvalidCredentialError("invalid code", detail={"reason": "not_found"})
        if user.status != UserStatus.ACTIVE:
            raise AccountSuspendedError("account is not active")
        tokens = self._start_session(user)
        logger.info("login_succeeded", user_id=user.id, method="otp")
        return tokens

    # invitations
    def _check_roles_grantable(
        self, actor: AuthenticatedContext, roles: List[str], business_id: Optional[str]
    ) -> None:
        unknown = sorted(set(roles) - self.authz.known_roles(business_id))
        if unknown:
            raise ValidationError("unknown roles", detail={"roles": unknown})
        if self.authz.super_admin_role in roles and not self.authz.is_super_admin(actor):
            raise ForbiddenError("only a super admin can grant that role")

    def invite_user(
        self,
        actor: AuthenticatedContext,
        email: str,
        *,
        roles: Iterable[str],
        name: str = "",
        business_id: Optional[str] = None,
    ) -> InviteLink:
        if not (
            self.authz.is_super_admin(actor)
            or self.authz.check_permission(actor, "users:invite")
        ):
            raise ForbiddenError("not allowed to invite users")
        target_business = business_id or actor.business_id
        if not self.authz.can_access_business(actor, target_business):
            raise ForbiddenError("cannot invite into another business")
        role_list = sorted(set(roles))
        if not role_list:
            raise ValidationError("at least one role is required")
        self._check_roles_grantable(actor, role_list, target_business)

        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("a valid email is required")
        user = self.store.get_user_by_email(normalized)
        if user is not None and user.status != UserStatus.PENDING:
            raise ConflictError("user already exists", detail={"field": "email"})
        if user is None:
            try:
                user = self.store.create_user(
                    normalized,
                    name=name,
                    roles=role_list,
                    status=UserStatus.PENDING,
                    business_id=target_business,
                    invited_by=actor.user_id,
                )
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail)
        else:
            # re-invite: refresh the pending record's grants before replacing the token
            self.store.update_user(
                user.id,
                {"roles": role_list, "business_id": target_business, "name": name or user.name},
            )

        link = self.magic_links.issue_invite(user.id, user.email)
        self.email.send_invitation(user.email, link.url, link.expires_at, invited_by=actor.email)
        logger.info("user_invited", user_id=user.id, invited_by=actor.user_id, roles=role_list)
        return link

    def check_invite(self, token: str) -> InviteCheck:
        check = self.magic_links.verify_invite(token)
        if not check.valid:
            reason = (check.error or InviteError.INVALID_TOKEN).value
            raise InvalidCredentialError("invalid or expired invitation", detail={"reason": reason})
        return check

    def accept_invite(self, token: str, password: str) -> SessionTokens:
        """Set the first password for an invited user and sign them in."""
        check = self.check_invite(token)
        strength = self.passwords.validate_strength(password)
        if not strength.valid:
            raise ValidationError("password too weak", detail={"errors": strength.errors})
        consumption = self.magic_links.consume_invite(
            check.user_id,
            token=token,
            fields={
                "hashed_password": self.passwords.hash(password),
                "last_login_at": self._clock(),
            },
        )
        if not consumption.success:
            if consumption.error in (InviteError.ALREADY_CONSUMED, InviteError.CONFLICT):
                raise ConflictError(
                    "invitation already used", detail={"reason": consumption.error.value}
                )
            reason = (consumption.error or InviteError.INVALID_TOKEN).value
            raise InvalidCredentialError("invalid or expired invitation", detail={"reason": reason})
        user = consumption.user
        logger.info("invite_accepted", user_id=user.id)
        return self.sessions.issue(user.id, user.email, user.roles, user.business_id)

    # sessions
    def refresh(self, refresh_credential: Optional[str]) -> SessionTokens:
        return self.sessions.refresh(refresh_credential)

    def logout(self):
        return self.sessions.revoke()

    # administration
    def _managed_user(self, actor: AuthenticatedContext, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not self.authz.can_access_business(actor, user.business_id):
            raise ForbiddenError("user belongs to another business")
        if self.authz.super_admin_role in user.roles and not self.authz.is_super_admin(actor):
            raise ForbiddenError("cannot manage a super admin")
        return user

    def suspend_user(self, actor: AuthenticatedContext, user_id: str) -> User:
        """Suspend an account; its outstanding sessions lapse at their next refresh."""
        if user_id == actor.user_id:
            raise ValidationError("cannot suspend your own account")
        user = self._managed_user(actor, user_id)
        if user.status == UserStatus.SUSPENDED:
            return user
        updated = self.store.update_user(
            user.id,
            {"status": UserStatus.SUSPENDED, "invite_token": None, "invite_expiry": None},
        )
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.warning("user_suspended", user_id=user.id, actor_id=actor.user_id)
        return updated

    def reactivate_user(self, actor: AuthenticatedContext, user_id: str) -> User:
        user = self._managed_user(actor, user_id)
        if user.status == UserStatus.ACTIVE:
            return user
        if user.status != UserStatus.SUSPENDED or not user.hashed_password:
            raise ConflictError("only suspended accounts can be reactivated")
        updated = self.store.update_user(
            user.id, {"status": UserStatus.ACTIVE}, expected_status=UserStatus.SUSPENDED
        )
        if updated is None:
            raise ConflictError("account status changed concurrently")
        logger.info("user_reactivated", user_id=user.id, actor_id=actor.user_id)
        return updated

    def bind_role_permissions(
        self,
        actor: AuthenticatedContext,
        role: str,
        permissions: Iterable[str],
        *,
        business_id: Optional[str] = None,
    ):
        if role == self.authz.super_admin_role:
            raise ValidationError("the super admin role cannot be rebound")
        if business_id is None and not self.authz.is_super_admin(actor):
            raise ForbiddenError("only a super admin can change global roles")
        if not self.authz.can_access_business(actor, business_id):
            raise ForbiddenError("cannot change roles of another business")
        requested = sorted({p.strip() for p in permissions if p and p.strip()})
        unknown = [p for p in requested if p not in PERMISSIONS]
        if unknown:
            raise ValidationError("unknown permissions", detail={"permissions": unknown})
        binding = self.store.set_role_permissions(role, requested, business_id=business_id)
        logger.info(
            "role_permissions_bound",
            role=role,
            business_id=business_id,
            permissions=requested,
            actor_id=actor.user_id,
        )
        return binding
