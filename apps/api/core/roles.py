"""
Platform roles and their precedence.

Roles form a total order:

    athlete < assistant < coach < admin < superadmin

Completing an invitation may raise a user's role but never lower it.
Legacy role values found on older documents are normalized first.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    ATHLETE = "athlete"
    ASSISTANT = "assistant"
    COACH = "coach"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


_RANK = {
    Role.ATHLETE: 0,
    Role.ASSISTANT: 1,
    Role.COACH: 2,
    Role.ADMIN: 3,
    Role.SUPERADMIN: 4,
}

# Values written by the previous role system.
LEGACY_ROLE_ALIASES = {
    "user": Role.ATHLETE,
    "creator": Role.COACH,
    "assistant_coach": Role.ASSISTANT,
}

# Legacy values that carry no role at all.
NO_ROLE_VALUES = {"guest", ""}

STAFF_ROLES = (Role.ADMIN, Role.SUPERADMIN)
INVITER_ROLES = (Role.COACH, Role.ADMIN, Role.SUPERADMIN)


def normalize_role(value: Any) -> Optional[Role]:
    """Map a stored role value (current or legacy) to a Role; None for none/unknown."""
    if value is None:
        return None
    if isinstance(value, Role):
        return value
    raw = str(value).strip().lower()
    if raw in NO_ROLE_VALUES:
        return None
    if raw in LEGACY_ROLE_ALIASES:
        return LEGACY_ROLE_ALIASES[raw]
    try:
        return Role(raw)
    except ValueError:
        return None


def role_rank(role: Optional[Role]) -> int:
    if role is None:
        return -1
    return _RANK[role]


def resolve_final_role(existing: Any, target: Role) -> Role:
    """Higher of the user's current role and the invitation's target role."""
    current = normalize_role(existing)
    if current is not None and role_rank(current) > role_rank(target):
        return current
    return target


def is_staff(role: Any) -> bool:
    return normalize_role(role) in STAFF_ROLES


def user_role(user_doc: Optional[dict]) -> Optional[Role]:
    """Role of a users/{uid} document; older documents keep roles in a list."""
    if not user_doc:
        return None
    role = normalize_role(user_doc.get("role"))
    if role is not None:
        return role
    candidates = [normalize_role(r) for r in (user_doc.get("roles") or [])]
    candidates = [r for r in candidates if r is not None]
    if not candidates:
        return None
    return max(candidates, key=role_rank)
