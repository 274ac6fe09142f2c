from __future__ import annotations

from enum import StrEnum
from typing import Any

from fieldtask.domain.errors import ValidationError


class Role(StrEnum):
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


ROLE_SYNONYMS: dict[str, Role] = {
    "worker": Role.USER,
    "member": Role.USER,
    "super-admin": Role.SUPERADMIN,
    "super_admin": Role.SUPERADMIN,
}

PRIVILEGED_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.SUPERADMIN})
MANAGING_ROLES: frozenset[Role] = frozenset({Role.MANAGER, Role.ADMIN, Role.SUPERADMIN})


def parse_role(raw: Any) -> Role:
    """Map a role claim onto the closed role set; unknown values become ``user``."""
    if not isinstance(raw, str):
        return Role.USER
    value = raw.strip().lower().replace(" ", "-")
    if value in ROLE_SYNONYMS:
        return ROLE_SYNONYMS[value]
    try:
        return Role(value)
    except ValueError:
        return Role.USER


def is_privileged(role: Role) -> bool:
    return role in PRIVILEGED_ROLES


def can_manage(role: Role) -> bool:
    return role in MANAGING_ROLES


class VisibilityMode(StrEnum):
    ORG = "org"
    ASSIGNEES = "assignees"
    GROUPS = "groups"
    ASSIGNEES_AND_GROUPS = "assignees+groups"
    ADMINS = "admins"


LEGACY_VISIBILITY_MODES: dict[str, VisibilityMode] = {
    "restricted": VisibilityMode.ASSIGNEES_AND_GROUPS,
}

USER_CLAUSE_MODES: frozenset[VisibilityMode] = frozenset(
    {VisibilityMode.ASSIGNEES, VisibilityMode.ASSIGNEES_AND_GROUPS}
)
GROUP_CLAUSE_MODES: frozenset[VisibilityMode] = frozenset(
    {VisibilityMode.GROUPS, VisibilityMode.ASSIGNEES_AND_GROUPS}
)


def parse_visibility_mode(raw: Any) -> VisibilityMode:
    if raw is None or raw == "":
        return VisibilityMode.ORG
    if isinstance(raw, VisibilityMode):
        return raw
    value = str(raw).strip().lower()
    if value in LEGACY_VISIBILITY_MODES:
        return LEGACY_VISIBILITY_MODES[value]
    try:
        return VisibilityMode(value)
    except ValueError as exc:
        raise ValidationError(f"invalid visibility mode: {raw}") from exc
