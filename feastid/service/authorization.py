from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Optional, Protocol

from feastid.logging import get_logger
from feastid.storage.common import DEFAULT_ROLE_PERMISSIONS

logger = get_logger(__name__)

# Every capability tag the platform knows about
PERMISSIONS: FrozenSet[str] = frozenset(
    {
        "business:read",
        "business:update",
        "business:disable",
        "stall:create",
        "stall:read",
        "stall:update",
        "stall:delete",
        "product:create",
        "product:update",
        "product:delete",
        "product:approve",
        "orders:create",
        "orders:view",
        "orders:fulfil",
        "orders:export",
        "users:invite",
        "users:role:update",
    }
).union(*DEFAULT_ROLE_PERMISSIONS.values())


class Principal(Protocol):
    roles: FrozenSet[str]
    business_id: Optional[str]


class AuthorizationEngine:
    """Resolve a principal's roles into permission decisions.

    Lookups are fail-closed: a role with no binding grants nothing, and tags
    match exactly. The super-admin role is a sentinel that grants everything.
    Business-scoped bindings shadow global bindings of the same role name.
    Store failures propagate so callers can surface them as retryable.
    """

    def __init__(self, store, *, super_admin_role: str = "super_admin") -> None:
        self.store = store
        self.super_admin_role = super_admin_role

    def is_super_admin(self, principal: Principal) -> bool:
        return self.super_admin_role in principal.roles

    def _bindings_for(self, business_id: Optional[str]) -> Dict[str, FrozenSet[str]]:
        bindings = dict(self.store.get_role_permission_bindings(None))
        if business_id:
            bindings.update(self.store.get_role_permission_bindings(business_id))
        return bindings

    def known_roles(self, business_id: Optional[str] = None) -> FrozenSet[str]:
        return frozenset(self._bindings_for(business_id)) | {self.super_admin_role}

    def check_permission(self, principal: Principal, permission: str) -> bool:
        if not permission or not isinstance(permission, str):
            return False
        if self.is_super_admin(principal):
            return True
        if not principal.roles:
            return False
        bindings = self._bindings_for(principal.business_id)
        for role in principal.roles:
            if permission in bindings.get(role, frozenset()):
                return True
        logger.info(
            "permission_denied",
            permission=permission,
            roles=sorted(principal.roles),
            business_id=principal.business_id,
        )
        return False

    def permissions_for(self, principal: Principal) -> FrozenSet[str]:
        if self.is_super_admin(principal):
            everything = set(PERMISSIONS)
            for perms in self._bindings_for(principal.business_id).values():
                everything.update(perms)
            return frozenset(everything)
        bindings = self._bindings_for(principal.business_id)
        granted: set[str] = set()
        for role in principal.roles:
            granted.update(bindings.get(role, frozenset()))
        return frozenset(granted)

    def has_any_role(self, principal: Principal, roles: Iterable[str]) -> bool:
        wanted = set(roles)
        if not wanted:
            return True
        return self.is_super_admin(principal) or bool(wanted & set(principal.roles))

    def can_access_business(self, principal: Principal, business_id: Optional[str]) -> bool:
        """Tenant scope check; super-admins cross tenants."""
        if not business_id:
            return True
        if self.is_super_admin(principal):
            return True
        return principal.business_id == business_id
