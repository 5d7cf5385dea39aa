"""Unit tests for signed session and refresh credentials."""

import base64
import json

import pytest

from feastid.config import Environment
from feastid.service.sessions import (
    REFRESH_KIND,
    SESSION_KIND,
    SessionError,
    SessionErrorKind,
    SessionManager,
)
from feastid.storage.models import UserStatus


@pytest.fixture
def manager(memory_store, settings, clock):
    return SessionManager(memory_store, settings, clock=clock)


@pytest.fixture
def active_user(memory_store):
    return memory_store.create_user(
        "owner@example.com",
        roles=["business_owner"],
        status=UserStatus.ACTIVE,
        business_id="biz-1",
    )


def _tamper_payload(token, **changes):
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{signature}"


class TestIssueAndVerify:
    def test_round_trip_preserves_claims(self, manager, active_user):
        tokens = manager.issue(active_user.id, active_user.email, {"business_owner"}, "biz-1")
        claims = manager.verify(tokens.session)
        assert claims.user_id == active_user.id
        assert claims.email == "owner@example.com"
        assert claims.roles == frozenset({"business_owner"})
        assert claims.business_id == "biz-1"
        assert claims.kind == SESSION_KIND

    def test_session_lifetime_is_fifteen_minutes(self, manager, clock):
        tokens = manager.issue("u1", "u1@example.com", [])
        assert (tokens.claims.expires_at - tokens.claims.issued_at).total_seconds() == 15 * 60
        assert tokens.refresh_expires_at > tokens.claims.expires_at

    def test_expired_after_sixteen_minutes(self, manager, clock):
        tokens = manager.issue("u1", "u1@example.com", [])
        clock.advance(minutes=16)
        with pytest.raises(SessionError) as excinfo:
            manager.verify(tokens.session)
        assert excinfo.value.kind == SessionErrorKind.EXPIRED

    def test_expired_at_exact_expiry(self, manager, clock):
        tokens = manager.issue("u1", "u1@example.com", [])
        clock.now = tokens.claims.expires_at
        with pytest.raises(SessionError) as excinfo:
            manager.verify(tokens.session)
        assert excinfo.value.kind == SessionErrorKind.EXPIRED

    def test_missing_credential(self, manager):
        for value in (None, ""):
            with pytest.raises(SessionError) as excinfo:
                manager.verify(value)
            assert excinfo.value.kind == SessionErrorKind.MISSING
            assert excinfo.value.status_code == 401

    def test_garbage_is_malformed(self, manager):
        for value in ("abc", "a.b.c", "not even close"):
            with pytest.raises(SessionError) as excinfo:
                manager.verify(value)
            assert excinfo.value.kind == SessionErrorKind.MALFORMED

    def test_non_ascii_signature_is_malformed(self, manager):
        tokens = manager.issue("u1", "u1@example.com", ["customer"])
        header, payload, _ = tokens.session.split(".")
        for signature in ("é", "Ã©", "abc☃"):
            with pytest.raises(SessionError) as excinfo:
                manager.verify(f"{header}.{payload}.{signature}")
            assert excinfo.value.kind == SessionErrorKind.MALFORMED

    def test_tampered_roles_are_rejected(self, manager):
        tokens = manager.issue("u1", "u1@example.com", ["customer"])
        forged = _tamper_payload(tokens.session, roles=["super_admin"])
        with pytest.raises(SessionError) as excinfo:
            manager.verify(forged)
        assert excinfo.value.kind == SessionErrorKind.MALFORMED

    def test_other_secret_is_rejected(self, memory_store, settings, clock):
        other = SessionManager(
            memory_store,
            settings.model_copy(update={"jwt_secret": "another-secret-another-secret-1234"}),
            clock=clock,
        )
        tokens = other.issue("u1", "u1@example.com", [])
        mine = SessionManager(memory_store, settings, clock=clock)
        with pytest.raises(SessionError) as excinfo:
            mine.verify(tokens.session)
        assert excinfo.value.kind == SessionErrorKind.MALFORMED

    def test_refresh_credential_is_not_a_session(self, manager):
        tokens = manager.issue("u1", "u1@example.com", [])
        with pytest.raises(SessionError) as excinfo:
            manager.verify(tokens.refresh_token)
        assert excinfo.value.kind == SessionErrorKind.WRONG_KIND
        with pytest.raises(SessionError) as excinfo:
            manager.verify(tokens.session, expected_kind=REFRESH_KIND)
        assert excinfo.value.kind == SessionErrorKind.WRONG_KIND


class TestRefresh:
    def test_refresh_rereads_roles(self, manager, active_user, memory_store, clock):
        tokens = manager.issue(active_user.id, active_user.email, active_user.roles, "biz-1")
        memory_store.update_user(active_user.id, {"roles": ["order_viewer"]})
        clock.advance(minutes=30)
        refreshed = manager.refresh(tokens.refresh_token)
        assert refreshed.claims.roles == frozenset({"order_viewer"})
        assert manager.verify(refreshed.session).user_id == active_user.id

    def test_refresh_of_suspended_user_fails(self, manager, active_user, memory_store):
        tokens = manager.issue(active_user.id, active_user.email, active_user.roles)
        memory_store.update_user(active_user.id, {"status": UserStatus.SUSPENDED})
        with pytest.raises(SessionError) as excinfo:
            manager.refresh(tokens.refresh_token)
        assert excinfo.value.kind == SessionErrorKind.ACCOUNT_SUSPENDED
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "account_suspended"

    def test_suspension_does_not_revoke_live_session(self, manager, active_user, memory_store):
        tokens = manager.issue(active_user.id, active_user.email, active_user.roles)
        memory_store.update_user(active_user.id, {"status": UserStatus.SUSPENDED})
        assert manager.verify(tokens.session).user_id == active_user.id

    def test_refresh_for_deleted_user(self, manager):
        tokens = manager.issue("ghost", "ghost@example.com", [])
        with pytest.raises(SessionError) as excinfo:
            manager.refresh(tokens.refresh_token)
        assert excinfo.value.kind == SessionErrorKind.ACCOUNT_NOT_FOUND

    def test_refresh_with_session_credential_fails(self, manager, active_user):
        tokens = manager.issue(active_user.id, active_user.email, active_user.roles)
        with pytest.raises(SessionError) as excinfo:
            manager.refresh(tokens.session)
        assert excinfo.value.kind == SessionErrorKind.WRONG_KIND


class TestCookies:
    def test_cookie_attributes(self, manager):
        tokens = manager.issue("u1", "u1@example.com", [])
        session_cookie, refresh_cookie = manager.cookies(tokens)
        assert session_cookie.name == "xianfeast_session"
        assert session_cookie.value == tokens.session
        assert session_cookie.max_age == 15 * 60
        assert session_cookie.httponly is True
        assert session_cookie.samesite == "strict"
        assert session_cookie.path == "/"
        assert refresh_cookie.name == "xianfeast_refresh"
        assert refresh_cookie.max_age == 7 * 24 * 3600

    def test_secure_flag_follows_environment(self, memory_store, settings, clock):
        dev = SessionManager(memory_store, settings, clock=clock)
        tokens = dev.issue("u1", "u1@example.com", [])
        assert all(cookie.secure is False for cookie in dev.cookies(tokens))
        prod = SessionManager(
            memory_store, settings.model_copy(update={"environment": Environment.PRODUCTION}), clock=clock
        )
        assert all(cookie.secure is True for cookie in prod.cookies(tokens))

    def test_revoke_expires_both_cookies(self, manager):
        cookies = manager.revoke()
        assert {c.name for c in cookies} == {"xianfeast_session", "xianfeast_refresh"}
        assert all(c.max_age == 0 and c.value == "" for c in cookies)
