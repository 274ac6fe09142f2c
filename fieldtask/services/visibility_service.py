from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement, and_, false, func, or_, true
from sqlmodel import Session, col, select

from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import AuthorizationError, ValidationError
from fieldtask.domain.models import AssignmentKind, GroupMember, Task, TaskAssignment
from fieldtask.domain.permissions import (
    GROUP_CLAUSE_MODES,
    LEGACY_VISIBILITY_MODES,
    USER_CLAUSE_MODES,
    VisibilityMode,
    parse_visibility_mode,
)
from fieldtask.infra.db import get_engine
from fieldtask.services.identity_resolver import normalize_id, normalize_ids

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubjectScope:
    unrestricted: bool = False
    subject_ids: frozenset[str] = frozenset()

    def contains(self, subject_id: Any) -> bool:
        if self.unrestricted:
            return True
        normalized = normalize_id(subject_id)
        return normalized is not None and normalized in self.subject_ids


def _stored_mode_values(modes: Iterable[VisibilityMode]) -> list[str]:
    """Every stored spelling that parses to one of ``modes``, legacy aliases included."""
    wanted = frozenset(modes)
    values = {mode.value for mode in wanted}
    values |= {alias for alias, mode in LEGACY_VISIBILITY_MODES.items() if mode in wanted}
    return sorted(values)


@dataclass(frozen=True)
class VisibilityFilter:
    """OR of independent clauses; ``unconditional`` matches everything.

    ``matches`` checks one loaded entity, ``clause`` renders the same OR as a
    WHERE clause over ``tasks`` so listings are filtered and limited in the query.
    """

    unconditional: bool = False
    actor_id: str | None = None
    group_ids: frozenset[str] = frozenset()

    def _mode_of(self, entity: Any) -> VisibilityMode:
        raw = getattr(entity, "visibility_mode", None)
        try:
            return parse_visibility_mode(raw)
        except ValidationError:
            logger.warning("unknown visibility mode treated as admins-only", extra={"action": str(raw)})
            return VisibilityMode.ADMINS

    def matches(self, entity: Any) -> bool:
        if self.unconditional:
            return True
        mode = self._mode_of(entity)
        if mode == VisibilityMode.ORG:
            return True
        if mode in USER_CLAUSE_MODES and self.actor_id is not None:
            if self.actor_id in normalize_ids(getattr(entity, "assigned_user_ids", None)):
                return True
        if mode in GROUP_CLAUSE_MODES and self.group_ids:
            if self.group_ids & normalize_ids(getattr(entity, "assigned_group_ids", None)):
                return True
        return False

    def clause(self) -> ColumnElement[bool]:
        if self.unconditional:
            return true()
        # null and empty parse as org; unknown spellings match no clause
        mode = func.lower(func.trim(Task.visibility_mode))
        clauses = [
            col(Task.visibility_mode).is_(None),
            col(Task.visibility_mode) == "",
            mode.in_(_stored_mode_values({VisibilityMode.ORG})),
        ]
        if self.actor_id is not None:
            assigned = (
                select(TaskAssignment.task_id)
                .where(TaskAssignment.kind == AssignmentKind.USER.value)
                .where(TaskAssignment.subject_id == self.actor_id)
            )
            clauses.append(and_(mode.in_(_stored_mode_values(USER_CLAUSE_MODES)), col(Task.id).in_(assigned)))
        if self.group_ids:
            grouped = (
                select(TaskAssignment.task_id)
                .where(TaskAssignment.kind == AssignmentKind.GROUP.value)
                .where(col(TaskAssignment.subject_id).in_(sorted(self.group_ids)))
            )
            clauses.append(and_(mode.in_(_stored_mode_values(GROUP_CLAUSE_MODES)), col(Task.id).in_(grouped)))
        return or_(*clauses)


def org_scoped(statement: Any, model: Any, actor: Actor) -> Any:
    """Restrict a select to the actor's organization; an unusable scope matches nothing."""
    if actor.is_global:
        return statement
    if actor.org_id is None:
        return statement.where(false())
    return statement.where(model.org_id == actor.org_id)


class VisibilityEngine:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _group_ids(self, actor: Actor) -> frozenset[str]:
        return normalize_ids(actor.group_ids)

    def accessible_subject_ids(self, actor: Actor) -> SubjectScope:
        if actor.privileged:
            return SubjectScope(unrestricted=True)
        actor_id = normalize_id(actor.id)
        subjects: set[str] = {actor_id} if actor_id is not None else set()
        group_ids = self._group_ids(actor)
        if group_ids:
            with self._session() as session:
                statement = select(GroupMember).where(col(GroupMember.group_id).in_(group_ids))
                if actor.org_id is not None:
                    statement = statement.where(GroupMember.org_id == actor.org_id)
                rows = session.exec(statement).all()
            subjects |= normalize_ids(row.user_id for row in rows)
        return SubjectScope(subject_ids=frozenset(subjects))

    def visibility_filter(self, actor: Actor) -> VisibilityFilter:
        if actor.privileged:
            return VisibilityFilter(unconditional=True)
        return VisibilityFilter(
            actor_id=normalize_id(actor.id),
            group_ids=self._group_ids(actor),
        )

    def is_visible(self, actor: Actor, entity: Any) -> bool:
        return self.visibility_filter(actor).matches(entity)

    def can_mutate_visibility(self, actor: Actor, mode: VisibilityMode) -> bool:
        return actor.privileged or mode != VisibilityMode.ADMINS

    def ensure_can_mutate_visibility(self, actor: Actor, mode: VisibilityMode) -> None:
        if not self.can_mutate_visibility(actor, mode):
            logger.info(
                "visibility change denied",
                extra={"actor_id": actor.id, "action": f"visibility:{mode}"},
            )
            raise AuthorizationError("only admins may restrict visibility to admins")
