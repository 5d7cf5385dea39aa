"""Common storage utilities shared between memory and postgres implementations.

Role sets are persisted as JSON arrays; they are decoded into frozensets here,
at the storage boundary, and nowhere else.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional

from feastid.storage.models import GLOBAL_SCOPE


# ============================================================================
# PREDEFINED ROLE REGISTRY
# ============================================================================

DEFAULT_ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "business_owner": frozenset(
        {
            "business:read",
            "business:update",
            "stall:create",
            "stall:update",
            "stall:delete",
            "product:create",
            "product:update",
            "product:delete",
            "product:approve",
            "orders:view",
            "orders:fulfil",
            "orders:export",
            "users:invite",
            "users:role:update",
        }
    ),
    "stall_manager": frozenset(
        {
            "stall:read",
            "stall:update",
            "product:create",
            "product:update",
            "product:approve",
            "orders:view",
            "orders:fulfil",
            "users:invite",
        }
    ),
    "menu_editor": frozenset({"product:create", "product:update", "orders:view"}),
    "order_viewer": frozenset({"orders:view"}),
    "customer": frozenset({"orders:create", "orders:view"}),
}


# ============================================================================
# FIELD CODECS
# ============================================================================

def normalize_email(email: str) -> str:
    """Case-normalize an email address for storage and lookup."""
    return (email or "").strip().lower()


def encode_roles(roles: Optional[Iterable[str]]) -> str:
    """Serialize a role set into its stored JSON form (sorted, de-duplicated)."""
    return json.dumps(sorted({str(r) for r in (roles or ()) if r}))


def decode_roles(raw: Any) -> FrozenSet[str]:
    """Decode a stored role value into a typed set of tags.

    Accepts the JSON array form written by :func:`encode_roles`, an already
    decoded list (JSONB columns), or ``None``. Anything unparseable decodes to
    the empty set so a corrupt row grants nothing.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, (list, tuple, set, frozenset)):
        return frozenset(str(r) for r in raw if r)
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return frozenset()
        if isinstance(parsed, list):
            return frozenset(str(r) for r in parsed if r)
    return frozenset()


def encode_permissions(permissions: Optional[Iterable[str]]) -> str:
    return json.dumps(sorted({str(p).strip() for p in (permissions or ()) if p}))


def decode_permissions(raw: Any) -> FrozenSet[str]:
    return decode_roles(raw)


def scope_key(business_id: Optional[str]) -> str:
    """Map an optional business id onto the binding scope column."""
    return business_id or GLOBAL_SCOPE


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse metadata field from JSON string or dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())
