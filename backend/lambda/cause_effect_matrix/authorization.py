"""authorization.py — Role / building entitlement decision from verified claims.

Identity verification happens in the shared auth layer; this module only turns
the resulting claims into an allow/deny decision.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, Set

__all__ = ["actor_identity", "building_entitlements", "is_admin", "is_authorized"]

ADMIN_ROLE = "admin"


def _as_set(value: Any) -> Set[str]:
    if value is None:
        return set()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = [value]
    return {str(item).strip() for item in items if str(item).strip()}


def is_admin(claims: Dict[str, Any]) -> bool:
    if claims.get("auth_mode") == "internal-key":
        return True
    if str(claims.get("custom:role") or "").strip().lower() == ADMIN_ROLE:
        return True
    return ADMIN_ROLE in {group.lower() for group in _as_set(claims.get("cognito:groups"))}


def building_entitlements(claims: Dict[str, Any]) -> Set[str]:
    return _as_set(claims.get("custom:buildings"))


def is_authorized(claims: Dict[str, Any], building_key: str, *, require_admin: bool = False) -> bool:
    if is_admin(claims):
        return True
    if require_admin:
        return False
    return building_key in building_entitlements(claims)


def actor_identity(claims: Dict[str, Any]) -> str:
    return str(claims.get("email") or claims.get("sub") or "unknown")
