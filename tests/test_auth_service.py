"""Unit tests for login, onboarding and administration flows."""

import pytest

from feastid.service.auth import AuthService
from feastid.service.authorization import AuthorizationEngine
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
from feastid.service.magic_link import MagicLinkEngine
from feastid.service.otp import OTPEngine
from feastid.service.passwords import PasswordManager
from feastid.service.sessions import SessionError, SessionErrorKind, SessionManager
from feastid.storage.models import UserStatus

PASSWORD = "Str0ngPassword"


@pytest.fixture
def passwords():
    return PasswordManager(memory_cost=1024, time_cost=1, parallelism=1)


@pytest.fixture
def auth(memory_store, settings, clock, passwords):
    return AuthService(
        memory_store,
        settings,
        passwords=passwords,
        otp=OTPEngine(memory_store, settings, clock=clock, code_factory=lambda n: "654321"),
        magic_links=MagicLinkEngine(memory_store, settings, clock=clock),
        sessions=SessionManager(memory_store, settings, clock=clock),
        authz=AuthorizationEngine(memory_store),
        email=EmailService(),
        clock=clock,
    )


@pytest.fixture
def make_user(memory_store, passwords):
    def _make(email, roles=("customer",), *, status=UserStatus.ACTIVE, business_id=None, mfa=False):
        return memory_store.create_user(
            email,
            roles=roles,
            status=status,
            business_id=business_id,
            hashed_password=passwords.hash(PASSWORD),
            mfa_enabled=mfa,
        )

    return _make


def as_actor(user):
    return AuthenticatedContext(
        user_id=user.id, email=user.email, roles=user.roles, business_id=user.business_id
    )


class TestPasswordLogin:
    def test_login_issues_session_with_stored_roles(self, auth, make_user, memory_store):
        user = make_user("owner@example.com", ["business_owner"], business_id="biz-1")
        result = auth.login("Owner@Example.com", PASSWORD)
        assert result.mfa_required is False
        claims = auth.sessions.verify(result.tokens.session)
        assert claims.user_id == user.id
        assert claims.roles == frozenset({"business_owner"})
        assert claims.business_id == "biz-1"
        assert memory_store.get_user(user.id).last_login_at is not None

    def test_wrong_password_and_unknown_email_look_alike(self, auth, make_user):
        make_user("owner@example.com")
        with pytest.raises(InvalidCredentialError) as wrong:
            auth.login("owner@example.com", "Wrong-password1")
        with pytest.raises(InvalidCredentialError) as unknown:
            auth.login("nobody@example.com", PASSWORD)
        assert wrong.value.message == unknown.value.message
        assert wrong.value.status_code == 401

    def test_suspended_account_cannot_log_in(self, auth, make_user):
        make_user("owner@example.com", status=UserStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            auth.login("owner@example.com", PASSWORD)

    def test_pending_account_without_password(self, auth, memory_store):
        memory_store.create_user("new@example.com", status=UserStatus.PENDING)
        with pytest.raises(InvalidCredentialError):
            auth.login("new@example.com", PASSWORD)

    def test_mfa_login_returns_challenge(self, auth, make_user):
        make_user("owner@example.com", mfa=True)
        result = auth.login("owner@example.com", PASSWORD)
        assert result.mfa_required is True
        assert result.tokens is None
        assert result.mfa_otp_id
        assert auth.email.outbox[-1][0] == "owner@example.com"
        assert "654321" in auth.email.outbox[-1][2]

        tokens = auth.verify_login_code(result.mfa_otp_id, "654321")
        assert auth.sessions.verify(tokens.session).email == "owner@example.com"


class TestPasscodeLogin:
    def test_code_is_mailed_to_active_user(self, auth, make_user):
        make_user("diner@example.com")
        request = auth.request_login_code("diner@example.com")
        assert len(auth.email.outbox) == 1
        tokens = auth.verify_login_code(request.otp_id, "654321")
        assert auth.sessions.verify(tokens.session).email == "diner@example.com"

    def test_unknown_email_gets_decoy(self, auth, memory_store):
        request = auth.request_login_code("stranger@example.com")
        assert request.otp_id
        assert auth.email.outbox == []
        assert memory_store.get_otp_record(request.otp_id).email == "stranger@example.com"
        with pytest.raises(InvalidCredentialError) as excinfo:
            auth.verify_login_code(request.otp_id, "000000")
        assert excinfo.value.detail == {"reason": "invalid_code", "attempts_remaining": 2}
        with pytest.raises(InvalidCredentialError):
            auth.verify_login_code(request.otp_id, "654321")

    def test_cooldown_applies_to_unknown_and_known_emails(self, auth, make_user, clock):
        make_user("diner@example.com")
        for email in ("diner@example.com", "stranger@example.com"):
            auth.request_login_code(email)
            with pytest.raises(RateLimitedError) as excinfo:
                auth.request_login_code(email)
            assert excinfo.value.retry_after == 60
        clock.advance(seconds=60)
        assert auth.request_login_code("stranger@example.com").otp_id

    def test_suspended_user_gets_decoy(self, auth, make_user):
        make_user("diner@example.com", status=UserStatus.SUSPENDED)
        auth.request_login_code("diner@example.com")
        assert auth.email.outbox == []

    def test_resend_cooldown(self, auth, make_user, clock):
        make_user("diner@example.com")
        auth.request_login_code("diner@example.com")
        with pytest.raises(RateLimitedError) as excinfo:
            auth.request_login_code("diner@example.com")
        assert excinfo.value.retry_after == 60
        clock.advance(seconds=60)
        auth.request_login_code("diner@example.com")
        assert len(auth.email.outbox) == 2

    def test_invalid_email_rejected(self, auth):
        with pytest.raises(ValidationError):
            auth.request_login_code("not-an-email")

    def test_wrong_code_reports_remaining_attempts(self, auth, make_user):
        make_user("diner@example.com")
        request = auth.request_login_code("diner@example.com")
        with pytest.raises(InvalidCredentialError) as excinfo:
            auth.verify_login_code(request.otp_id, "000000")
        assert excinfo.value.detail == {"reason": "invalid_code", "attempts_remaining": 2}

    def test_exhausted_code(self, auth, make_user):
        make_user("diner@example.com")
        request = auth.request_login_code("diner@example.com")
        for _ in range(3):
            with pytest.raises(InvalidCredentialError):
                auth.verify_login_code(request.otp_id, "000000")
        with pytest.raises(AttemptsExceededError) as excinfo:
            auth.verify_login_code(request.otp_id, "654321")
        assert excinfo.value.status_code == 429

    def test_expired_code(self, auth, make_user, clock):
        make_user("diner@example.com")
        request = auth.request_login_code("diner@example.com")
        clock.advance(minutes=5)
        with pytest.raises(InvalidCredentialError) as excinfo:
            auth.verify_login_code(request.otp_id, "654321")
        assert excinfo.value.detail == {"reason": "expired"}

    def test_user_suspended_between_send_and_verify(self, auth, make_user, memory_store):
        user = make_user("diner@example.com")
        request = auth.request_login_code("diner@example.com")
        memory_store.update_user(user.id, {"status": UserStatus.SUSPENDED})
        with pytest.raises(AccountSuspendedError):
            auth.verify_login_code(request.otp_id, "654321")


class TestInvitations:
    def test_invite_and_accept(self, auth, make_user, memory_store):
        manager = make_user("manager@example.com", ["stall_manager"], business_id="biz-1")
        link = auth.invite_user(as_actor(manager), "cook@example.com", roles=["menu_editor"])

        invited = memory_store.get_user_by_email("cook@example.com")
        assert invited.status == UserStatus.PENDING
        assert invited.business_id == "biz-1"
        assert invited.invited_by == manager.id
        assert link.url in auth.email.outbox[-1][2]

        check = auth.check_invite(link.token)
        assert check.email == "cook@example.com"

        tokens = auth.accept_invite(link.token, PASSWORD)
        claims = auth.sessions.verify(tokens.session)
        assert claims.user_id == invited.id
        assert claims.roles == frozenset({"menu_editor"})
        assert memory_store.get_user(invited.id).status == UserStatus.ACTIVE
        assert auth.login("cook@example.com", PASSWORD).tokens is not None

    def test_invite_link_is_single_use(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        link = auth.invite_user(as_actor(admin), "cook@example.com", roles=["customer"])
        auth.accept_invite(link.token, PASSWORD)
        with pytest.raises(InvalidCredentialError):
            auth.accept_invite(link.token, PASSWORD)

    def test_weak_password_leaves_invite_usable(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        link = auth.invite_user(as_actor(admin), "cook@example.com", roles=["customer"])
        with pytest.raises(ValidationError) as excinfo:
            auth.accept_invite(link.token, "weak")
        assert excinfo.value.detail["errors"]
        assert auth.check_invite(link.token).valid is True

    def test_reinvite_replaces_token_and_roles(self, auth, make_user, memory_store):
        admin = make_user("admin@example.com", ["super_admin"])
        first = auth.invite_user(as_actor(admin), "cook@example.com", roles=["customer"])
        second = auth.invite_user(as_actor(admin), "cook@example.com", roles=["order_viewer"])
        with pytest.raises(InvalidCredentialError):
            auth.check_invite(first.token)
        assert memory_store.get_user_by_email("cook@example.com").roles == frozenset(
            {"order_viewer"}
        )
        assert auth.check_invite(second.token).valid

    def test_cannot_invite_existing_active_user(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        make_user("cook@example.com")
        with pytest.raises(ConflictError):
            auth.invite_user(as_actor(admin), "cook@example.com", roles=["customer"])

    def test_invite_requires_permission(self, auth, make_user):
        customer = make_user("diner@example.com")
        with pytest.raises(ForbiddenError):
            auth.invite_user(as_actor(customer), "friend@example.com", roles=["customer"])

    def test_only_super_admin_grants_super_admin(self, auth, make_user):
        owner = make_user("owner@example.com", ["business_owner"], business_id="biz-1")
        with pytest.raises(ForbiddenError):
            auth.invite_user(as_actor(owner), "x@example.com", roles=["super_admin"])

    def test_unknown_role_rejected(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        with pytest.raises(ValidationError) as excinfo:
            auth.invite_user(as_actor(admin), "x@example.com", roles=["wizard"])
        assert excinfo.value.detail == {"roles": ["wizard"]}

    def test_cross_business_invite_forbidden(self, auth, make_user):
        owner = make_user("owner@example.com", ["business_owner"], business_id="biz-1")
        with pytest.raises(ForbiddenError):
            auth.invite_user(
                as_actor(owner), "x@example.com", roles=["customer"], business_id="biz-2"
            )


class TestAdministration:
    def test_suspend_and_reactivate(self, auth, make_user, memory_store):
        admin = make_user("admin@example.com", ["super_admin"])
        target = make_user("owner@example.com", ["business_owner"])
        tokens = auth.login("owner@example.com", PASSWORD).tokens

        suspended = auth.suspend_user(as_actor(admin), target.id)
        assert suspended.status == UserStatus.SUSPENDED
        with pytest.raises(SessionError) as excinfo:
            auth.refresh(tokens.refresh_token)
        assert excinfo.value.kind == SessionErrorKind.ACCOUNT_SUSPENDED

        reactivated = auth.reactivate_user(as_actor(admin), target.id)
        assert reactivated.status == UserStatus.ACTIVE
        assert auth.refresh(tokens.refresh_token).claims.user_id == target.id

    def test_suspend_is_idempotent(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        target = make_user("owner@example.com")
        auth.suspend_user(as_actor(admin), target.id)
        assert auth.suspend_user(as_actor(admin), target.id).status == UserStatus.SUSPENDED

    def test_cannot_suspend_self(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        with pytest.raises(ValidationError):
            auth.suspend_user(as_actor(admin), admin.id)

    def test_suspend_unknown_user(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        with pytest.raises(NotFoundError):
            auth.suspend_user(as_actor(admin), "missing")

    def test_reactivating_pending_user_conflicts(self, auth, make_user, memory_store):
        admin = make_user("admin@example.com", ["super_admin"])
        pending = memory_store.create_user("new@example.com")
        with pytest.raises(ConflictError):
            auth.reactivate_user(as_actor(admin), pending.id)

    def test_suspension_clears_pending_invite(self, auth, make_user, memory_store):
        admin = make_user("admin@example.com", ["super_admin"])
        link = auth.invite_user(as_actor(admin), "cook@example.com", roles=["customer"])
        pending = memory_store.get_user_by_email("cook@example.com")
        auth.suspend_user(as_actor(admin), pending.id)
        with pytest.raises(InvalidCredentialError):
            auth.check_invite(link.token)


class TestRoleBindings:
    def test_owner_binds_business_role(self, auth, make_user):
        owner = make_user("owner@example.com", ["business_owner"], business_id="biz-1")
        binding = auth.bind_role_permissions(
            as_actor(owner), "cashier", ["orders:create", "orders:view"], business_id="biz-1"
        )
        assert binding.permissions == frozenset({"orders:create", "orders:view"})
        cashier = AuthenticatedContext("u2", "c@example.com", frozenset({"cashier"}), "biz-1")
        assert auth.authz.check_permission(cashier, "orders:create")

    def test_global_binding_needs_super_admin(self, auth, make_user):
        owner = make_user("owner@example.com", ["business_owner"], business_id="biz-1")
        with pytest.raises(ForbiddenError):
            auth.bind_role_permissions(as_actor(owner), "cashier", ["orders:view"])

    def test_other_business_forbidden(self, auth, make_user):
        owner = make_user("owner@example.com", ["business_owner"], business_id="biz-1")
        with pytest.raises(ForbiddenError):
            auth.bind_role_permissions(
                as_actor(owner), "cashier", ["orders:view"], business_id="biz-2"
            )

    def test_unknown_permission_rejected(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        with pytest.raises(ValidationError):
            auth.bind_role_permissions(as_actor(admin), "cashier", ["orders:teleport"])

    def test_super_admin_role_is_not_rebindable(self, auth, make_user):
        admin = make_user("admin@example.com", ["super_admin"])
        with pytest.raises(ValidationError):
            auth.bind_role_permissions(as_actor(admin), "super_admin", ["orders:view"])
