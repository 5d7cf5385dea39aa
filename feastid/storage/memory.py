from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from feastid.logging import get_logger
from feastid.storage.common import (
    DEFAULT_ROLE_PERMISSIONS,
    decode_permissions,
    decode_roles,
    generate_uuid,
    normalize_email,
    scope_key,
)
from feastid.storage.errors import ConstraintViolation, StoreUnavailable
from feastid.storage.models import (
    GLOBAL_SCOPE,
    OTPRecord,
    OTPStatus,
    RolePermissionBinding,
    User,
    UserStatus,
    utcnow,
)

# Columns callers may change through update_user
_UPDATABLE_USER_FIELDS = frozenset(
    {
        "name",
        "hashed_password",
        "roles",
        "status",
        "mfa_enabled",
        "business_id",
        "invite_token",
        "invite_expiry",
        "last_login_at",
        "meta",
    }
)

# Sentinel distinguishing "no condition" from "expect invite_token IS NULL"
_UNSET: Any = object()


class MemoryStore:
    """Thread-safe in-memory credential store, persisted as JSON on every write.

    Every read-modify-write runs under one re-entrant lock, which serializes
    the conditional invite consume and the OTP attempt increment per key.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/feastid",
        *,
        lock_timeout_seconds: float = 5.0,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otp_records: Dict[str, OTPRecord] = {}
        self.role_bindings: Dict[Tuple[str, str], RolePermissionBinding] = {}
        # RLock so helpers can nest inside an outer locked section
        self._data_lock = threading.RLock()
        self._lock_timeout = lock_timeout_seconds
        self._persist_enabled = persist
        self.fs_root = Path(fs_root)
        if persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self.default_role_bindings()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self._lock_timeout):
            self.logger.error("memory_store_lock_timeout", operation=operation)
            raise StoreUnavailable(operation)
        try:
            yield
        finally:
            self._data_lock.release()

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def default_role_bindings(self) -> None:
        for role, permissions in DEFAULT_ROLE_PERMISSIONS.items():
            self.role_bindings[(GLOBAL_SCOPE, role)] = RolePermissionBinding(
                role=role, permissions=permissions, business_id=GLOBAL_SCOPE
            )

    # users
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        roles: Iterable[str] = (),
        status: UserStatus = UserStatus.PENDING,
        business_id: Optional[str] = None,
        invited_by: Optional[str] = None,
        hashed_password: Optional[str] = None,
        mfa_enabled: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._locked("create_user"):
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                name=name,
                hashed_password=hashed_password,
                roles=frozenset(roles),
                status=UserStatus(status),
                mfa_enabled=mfa_enabled,
                business_id=business_id,
                invited_by=invited_by,
                meta=dict(meta) if meta else None,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._locked("get_user"):
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._locked("get_user_by_email"):
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user_by_invite_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._locked("get_user_by_invite_token"):
            user = next(
                (u for u in self.users.values() if u.invite_token == token), None
            )
            return replace(user) if user else None

    def list_users(
        self, business_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._locked("list_users"):
            results = [
                replace(u)
                for u in self.users.values()
                if not business_id or u.business_id == business_id
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(
        self,
        user_id: str,
        fields: Dict[str, Any],
        *,
        expected_invite_token: Any = _UNSET,
        expected_status: Optional[UserStatus] = None,
    ) -> Optional[User]:
        """Apply ``fields`` to a user and return the updated record.

        When ``expected_invite_token`` or ``expected_status`` is given the
        write only happens if the stored row still matches; otherwise ``None``
        is returned exactly as for an unknown id.
        """
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._locked("update_user"):
            user = self.users.get(user_id)
            if not user:
                return None
            if (
                expected_invite_token is not _UNSET
                and user.invite_token != expected_invite_token
            ):
                return None
            if expected_status is not None and user.status != expected_status:
                return None
            changes = dict(fields)
            if "roles" in changes:
                changes["roles"] = frozenset(changes["roles"] or ())
            if "status" in changes:
                changes["status"] = UserStatus(changes["status"])
            updated = replace(user, **changes, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    # one-time passcodes
    def create_otp_record(self, record: OTPRecord) -> OTPRecord:
        with self._locked("create_otp_record"):
            if record.id in self.otp_records:
                raise ConstraintViolation("otp id already exists", {"field": "id"})
            stored = replace(record, email=normalize_email(record.email))
            self.otp_records[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_otp_record(self, otp_id: str) -> Optional[OTPRecord]:
        with self._locked("get_otp_record"):
            record = self.otp_records.get(otp_id)
            return replace(record) if record else None

    def latest_otp_record_for_email(self, email: str) -> Optional[OTPRecord]:
        normalized = normalize_email(email)
        with self._locked("latest_otp_record_for_email"):
            matches = [r for r in self.otp_records.values() if r.email == normalized]
            if not matches:
                return None
            return replace(max(matches, key=lambda r: r.created_at))

    def increment_otp_attempts(self, otp_id: str) -> Optional[int]:
        """Atomically bump the attempt counter of a live record.

        Returns the new count, or ``None`` when the record is unknown or has
        already reached a terminal state.
        """
        with self._locked("increment_otp_attempts"):
            record = self.otp_records.get(otp_id)
            if not record or record.status != OTPStatus.ISSUED:
                return None
            record.attempts += 1
            self._persist_state()
            return record.attempts

    def mark_otp_consumed(
        self, otp_id: str, status: OTPStatus = OTPStatus.VERIFIED
    ) -> bool:
        """Move a live record into a terminal state; False if it already left ISSUED."""
        if status == OTPStatus.ISSUED:
            raise ValueError("consumed status must be terminal")
        with self._locked("mark_otp_consumed"):
            record = self.otp_records.get(otp_id)
            if not record or record.status != OTPStatus.ISSUED:
                return False
            record.status = status
            record.consumed_at = utcnow()
            self._persist_state()
            return True

    def invalidate_otp_records_for_email(self, email: str) -> int:
        normalized = normalize_email(email)
        with self._locked("invalidate_otp_records_for_email"):
            count = 0
            now = utcnow()
            for record in self.otp_records.values():
                if record.email == normalized and record.status == OTPStatus.ISSUED:
                    record.status = OTPStatus.SUPERSEDED
                    record.consumed_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_otp_records(self, now: datetime) -> int:
        """Drop records that are past expiry or already terminal."""
        with self._locked("delete_expired_otp_records"):
            doomed = [
                otp_id
                for otp_id, record in self.otp_records.items()
                if record.status != OTPStatus.ISSUED or now >= record.expires_at
            ]
            for otp_id in doomed:
                del self.otp_records[otp_id]
            if doomed:
                self._persist_state()
            return len(doomed)

    # role registry
    def get_role_permission_bindings(
        self, business_id: Optional[str] = None
    ) -> Dict[str, frozenset]:
        """Return role -> permissions for exactly one scope (global when None)."""
        scope = scope_key(business_id)
        with self._locked("get_role_permission_bindings"):
            return {
                role: binding.permissions
                for (binding_scope, role), binding in self.role_bindings.items()
                if binding_scope == scope
            }

    def set_role_permissions(
        self,
        role: str,
        permissions: Iterable[str],
        *,
        business_id: Optional[str] = None,
    ) -> RolePermissionBinding:
        scope = scope_key(business_id)
        binding = RolePermissionBinding(
            role=role,
            permissions=frozenset(p.strip() for p in permissions if p and p.strip()),
            business_id=scope,
        )
        with self._locked("set_role_permissions"):
            self.role_bindings[(scope, role)] = binding
            self._persist_state()
        return binding

    # persistence
    def _persist_state(self) -> None:
        if not self._persist_enabled:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "otp_records": [
                self._serialize_otp_record(r) for r in self.otp_records.values()
            ],
            "role_bindings": [
                self._serialize_binding(b) for b in self.role_bindings.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable("persist_state", exc) from exc

    def _load_state(self) -> bool:
        if not self._persist_enabled:
            return False
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.otp_records = {
            r["id"]: self._deserialize_otp_record(r)
            for r in data.get("otp_records", [])
        }
        self.role_bindings = {}
        for raw in data.get("role_bindings", []):
            binding = self._deserialize_binding(raw)
            self.role_bindings[(binding.business_id, binding.role)] = binding
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "hashed_password": user.hashed_password,
            "roles": sorted(user.roles),
            "status": user.status.value,
            "mfa_enabled": user.mfa_enabled,
            "business_id": user.business_id,
            "invited_by": user.invited_by,
            "invite_token": user.invite_token,
            "invite_expiry": self._serialize_datetime(user.invite_expiry),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name") or "",
            hashed_password=data.get("hashed_password"),
            roles=decode_roles(data.get("roles")),
            status=UserStatus(data.get("status", UserStatus.PENDING.value)),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            business_id=data.get("business_id"),
            invited_by=data.get("invited_by"),
            invite_token=data.get("invite_token"),
            invite_expiry=self._deserialize_datetime(data.get("invite_expiry")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
            meta=data.get("meta"),
        )

    def _serialize_otp_record(self, record: OTPRecord) -> dict:
        return {
            "id": record.id,
            "email": record.email,
            "code_hash": record.code_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "max_attempts": record.max_attempts,
            "attempts": record.attempts,
            "status": record.status.value,
            "created_at": self._serialize_datetime(record.created_at),
            "consumed_at": self._serialize_datetime(record.consumed_at),
        }

    def _deserialize_otp_record(self, data: dict) -> OTPRecord:
        return OTPRecord(
            id=data["id"],
            email=data["email"],
            code_hash=data["code_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            max_attempts=int(data["max_attempts"]),
            attempts=int(data.get("attempts", 0)),
            status=OTPStatus(data.get("status", OTPStatus.ISSUED.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )

    def _serialize_binding(self, binding: RolePermissionBinding) -> dict:
        return {
            "role": binding.role,
            "business_id": binding.business_id,
            "permissions": sorted(binding.permissions),
            "updated_at": self._serialize_datetime(binding.updated_at),
        }

    def _deserialize_binding(self, data: dict) -> RolePermissionBinding:
        return RolePermissionBinding(
            role=data["role"],
            business_id=data.get("business_id") or GLOBAL_SCOPE,
            permissions=decode_permissions(data.get("permissions")),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
