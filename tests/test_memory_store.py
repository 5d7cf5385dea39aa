"""Tests for the in-memory credential store and its JSON persistence."""

from datetime import datetime, timedelta, timezone

import pytest

from feastid.storage.errors import ConstraintViolation
from feastid.storage.memory import MemoryStore
from feastid.storage.models import OTPRecord, OTPStatus, UserStatus


def _otp(email, *, minutes=5):
    return OTPRecord.new(
        email,
        "hash",
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=minutes),
        max_attempts=3,
    )


class TestUsers:
    def test_email_is_normalized_and_unique(self, memory_store):
        user = memory_store.create_user("  Chef@Example.COM ")
        assert user.email == "chef@example.com"
        assert memory_store.get_user_by_email("CHEF@example.com").id == user.id
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("chef@example.com")

    def test_returned_records_are_copies(self, memory_store):
        user = memory_store.create_user("chef@example.com", roles=["menu_editor"])
        user.name = "changed locally"
        assert memory_store.get_user(user.id).name == ""

    def test_update_rejects_unknown_fields(self, memory_store):
        user = memory_store.create_user("chef@example.com")
        with pytest.raises(ValueError):
            memory_store.update_user(user.id, {"email": "other@example.com"})

    def test_update_unknown_user_returns_none(self, memory_store):
        assert memory_store.update_user("missing", {"name": "x"}) is None

    def test_conditional_update_on_invite_token(self, memory_store):
        user = memory_store.create_user("chef@example.com")
        memory_store.update_user(user.id, {"invite_token": "tok-1"})

        stale = memory_store.update_user(
            user.id, {"status": UserStatus.ACTIVE}, expected_invite_token="tok-0"
        )
        assert stale is None
        assert memory_store.get_user(user.id).status == UserStatus.PENDING

        fresh = memory_store.update_user(
            user.id,
            {"status": UserStatus.ACTIVE, "invite_token": None},
            expected_invite_token="tok-1",
        )
        assert fresh.status == UserStatus.ACTIVE
        assert fresh.invite_token is None

    def test_conditional_update_on_status(self, memory_store):
        user = memory_store.create_user("chef@example.com", status=UserStatus.ACTIVE)
        assert (
            memory_store.update_user(
                user.id, {"name": "x"}, expected_status=UserStatus.PENDING
            )
            is None
        )
        assert memory_store.update_user(
            user.id, {"name": "x"}, expected_status=UserStatus.ACTIVE
        ).name == "x"

    def test_lookup_by_invite_token(self, memory_store):
        user = memory_store.create_user("chef@example.com")
        memory_store.update_user(user.id, {"invite_token": "tok-1"})
        assert memory_store.get_user_by_invite_token("tok-1").id == user.id
        assert memory_store.get_user_by_invite_token("") is None

    def test_list_users_filters_by_business(self, memory_store):
        memory_store.create_user("a@example.com", business_id="biz-1")
        memory_store.create_user("b@example.com", business_id="biz-2")
        assert [u.email for u in memory_store.list_users("biz-1")] == ["a@example.com"]
        assert len(memory_store.list_users()) == 2


class TestOTPRecords:
    def test_increment_stops_at_terminal_state(self, memory_store):
        record = memory_store.create_otp_record(_otp("diner@example.com"))
        assert memory_store.increment_otp_attempts(record.id) == 1
        assert memory_store.mark_otp_consumed(record.id) is True
        assert memory_store.increment_otp_attempts(record.id) is None
        assert memory_store.mark_otp_consumed(record.id) is False

    def test_mark_consumed_rejects_issued(self, memory_store):
        record = memory_store.create_otp_record(_otp("diner@example.com"))
        with pytest.raises(ValueError):
            memory_store.mark_otp_consumed(record.id, OTPStatus.ISSUED)

    def test_invalidate_only_touches_live_records(self, memory_store):
        used = memory_store.create_otp_record(_otp("diner@example.com"))
        memory_store.mark_otp_consumed(used.id)
        live = memory_store.create_otp_record(_otp("diner@example.com"))
        assert memory_store.invalidate_otp_records_for_email("diner@example.com") == 1
        assert memory_store.get_otp_record(live.id).status == OTPStatus.SUPERSEDED
        assert memory_store.get_otp_record(used.id).status == OTPStatus.VERIFIED


class TestRoleBindings:
    def test_defaults_are_seeded(self, memory_store):
        bindings = memory_store.get_role_permission_bindings()
        assert set(bindings) == {
            "business_owner",
            "stall_manager",
            "menu_editor",
            "order_viewer",
            "customer",
        }
        assert memory_store.get_role_permission_bindings("biz-1") == {}

    def test_scopes_are_kept_apart(self, memory_store):
        memory_store.set_role_permissions("cashier", [" orders:create ", ""], business_id="biz-1")
        assert memory_store.get_role_permission_bindings("biz-1") == {
            "cashier": frozenset({"orders:create"})
        }
        assert "cashier" not in memory_store.get_role_permission_bindings()


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        root = tmp_path / "persisted"
        first = MemoryStore(str(root))
        user = first.create_user(
            "owner@example.com",
            roles=["business_owner"],
            status=UserStatus.ACTIVE,
            business_id="biz-1",
        )
        first.set_role_permissions("cashier", ["orders:create"], business_id="biz-1")
        record = first.create_otp_record(_otp("owner@example.com"))

        second = MemoryStore(str(root))
        reloaded = second.get_user(user.id)
        assert reloaded.email == "owner@example.com"
        assert reloaded.roles == frozenset({"business_owner"})
        assert reloaded.status == UserStatus.ACTIVE
        assert reloaded.created_at == user.created_at
        assert second.get_role_permission_bindings("biz-1")["cashier"] == frozenset(
            {"orders:create"}
        )
        assert second.get_otp_record(record.id).expires_at == record.expires_at

    def test_non_persistent_store_writes_nothing(self, tmp_path):
        root = tmp_path / "ephemeral"
        store = MemoryStore(str(root), persist=False)
        store.create_user("a@example.com")
        assert not root.exists()
