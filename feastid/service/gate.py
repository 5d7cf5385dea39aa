from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Union

from feastid.logging import get_logger
from feastid.service.authorization import AuthorizationEngine
from feastid.service.sessions import SessionError, SessionManager

logger = get_logger(__name__)

_GENERIC_401 = "authentication required"
_GENERIC_403 = "insufficient permissions"


@dataclass(frozen=True)
class AuthenticatedContext:
    """Who is calling; the only identity value handed to business logic."""

    user_id: str
    email: str
    roles: FrozenSet[str]
    business_id: Optional[str] = None


@dataclass(frozen=True)
class Rejection:
    status_code: int
    error_code: str
    message: str
    # internal reason, logged but never sent to the caller
    reason: str


GateResult = Union[AuthenticatedContext, Rejection]


class RequestGate:
    def __init__(self, sessions: SessionManager, authz: AuthorizationEngine) -> None:
        self.sessions = sessions
        self.authz = authz

    def authenticate(
        self,
        credential: Optional[str],
        *,
        permission: Optional[str] = None,
        required_roles: Optional[Iterable[str]] = None,
        business_id: Optional[str] = None,
    ) -> GateResult:
        try:
            claims = self.sessions.verify(credential)
        except SessionError as exc:
            logger.info("gate_rejected", status_code=401, reason=exc.kind.value)
            return Rejection(401, "unauthorized", _GENERIC_401, exc.kind.value)

        context = AuthenticatedContext(
            user_id=claims.user_id,
            email=claims.email,
            roles=claims.roles,
            business_id=claims.business_id,
        )

        if required_roles is not None and not self.authz.has_any_role(
            context, required_roles
        ):
            return self._forbid(context, "missing_role")
        if business_id is not None and not self.authz.can_access_business(
            context, business_id
        ):
            return self._forbid(context, "business_scope")
        if permission is not None and not self.authz.check_permission(
            context, permission
        ):
            return self._forbid(context, f"missing_permission:{permission}")
        return context

    def _forbid(self, context: AuthenticatedContext, reason: str) -> Rejection:
        logger.info(
            "gate_rejected", status_code=403, reason=reason, user_id=context.user_id
        )
        return Rejection(403, "forbidden", _GENERIC_403, reason)
