from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fieldtask.domain.permissions import Role, is_privileged


@dataclass(frozen=True)
class GlobalScope:
    """Cross-organization scope, granted to the reserved ``root`` org claim."""


@dataclass(frozen=True)
class SpecificScope:
    org_id: str


OrgScope = GlobalScope | SpecificScope


@dataclass(frozen=True)
class Actor:
    id: str | None
    org_scope: OrgScope | None
    role: Role
    group_ids: frozenset[str] = frozenset()
    claims: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def privileged(self) -> bool:
        return is_privileged(self.role)

    @property
    def org_id(self) -> str | None:
        if isinstance(self.org_scope, SpecificScope):
            return self.org_scope.org_id
        return None

    @property
    def is_global(self) -> bool:
        return isinstance(self.org_scope, GlobalScope)

    def in_scope(self, org_id: str | None) -> bool:
        if isinstance(self.org_scope, GlobalScope):
            return True
        if isinstance(self.org_scope, SpecificScope):
            return org_id is not None and org_id == self.org_scope.org_id
        return False
