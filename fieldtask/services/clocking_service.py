from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session, col, select

from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from fieldtask.domain.models import (
    AuditEntryRead,
    Clocking,
    ClockingBulkOutcome,
    ClockingBulkRead,
    ClockingCreate,
    ClockingUpdate,
    Project,
    User,
    now_utc,
)
from fieldtask.infra.db import OCC_MAX_RETRIES, compare_and_swap, get_engine
from fieldtask.infra.events import event_bus
from fieldtask.services.audit_trail_service import AuditTrail
from fieldtask.services.identity_resolver import IdentityResolver, normalize_id
from fieldtask.services.visibility_service import SubjectScope, VisibilityEngine, org_scoped

CLOCK_TYPES = frozenset({"present", "in", "out", "training", "sick", "leave", "iod", "overtime"})
MAX_LIST_LIMIT = 1000

# flat fields plus location and attachments compared as whole values
CLOCKING_TRACKED_FIELDS = ("type", "at", "notes", "project_id", "user_id", "location", "attachments")

logger = logging.getLogger(__name__)


def _clock_type(raw: str) -> str:
    value = raw.strip().lower()
    if value not in CLOCK_TYPES:
        raise ValidationError(f"unknown clocking type: {raw}")
    return value


class ClockingService:
    def __init__(
        self,
        *,
        visibility: VisibilityEngine | None = None,
        audit_trail: AuditTrail | None = None,
        resolver: IdentityResolver | None = None,
    ) -> None:
        self._visibility = visibility or VisibilityEngine()
        self._audit_trail = audit_trail or AuditTrail()
        self._resolver = resolver or IdentityResolver()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_clocking(self, session: Session, actor: Actor, clocking_id: str) -> Clocking:
        statement = org_scoped(select(Clocking).where(Clocking.id == clocking_id), Clocking, actor)
        clocking = session.exec(statement).first()
        if clocking is None:
            raise NotFoundError("clocking not found")
        return clocking

    def _ensure_subject(self, subjects: SubjectScope, actor: Actor, user_id: Any) -> None:
        if not subjects.contains(user_id):
            logger.info("clocking subject not accessible", extra={"actor_id": actor.id})
            raise AuthorizationError("user not visible")

    def _get_accessible_clocking(self, session: Session, actor: Actor, clocking_id: str) -> Clocking:
        clocking = self._get_scoped_clocking(session, actor, clocking_id)
        self._ensure_subject(self._visibility.accessible_subject_ids(actor), actor, clocking.user_id)
        return clocking

    def _user_in_org(self, session: Session, org_id: str | None, user_id: str) -> bool:
        statement = select(User.id).where(User.id == user_id)
        if org_id is not None:
            statement = statement.where(User.org_id == org_id)
        return session.exec(statement).first() is not None

    def _ensure_project(self, session: Session, org_id: str | None, project_id: str | None) -> None:
        if not project_id:
            return
        statement = select(Project.id).where(Project.id == project_id)
        if org_id is not None:
            statement = statement.where(Project.org_id == org_id)
        if session.exec(statement).first() is None:
            raise NotFoundError("project not found")

    def list_clockings(
        self,
        actor: Actor,
        *,
        user_id: str | None = None,
        project_id: str | None = None,
        limit: int = 200,
    ) -> list[Clocking]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        subjects = self._visibility.accessible_subject_ids(actor)
        with self._session() as session:
            statement = org_scoped(select(Clocking), Clocking, actor)
            if user_id is not None:
                self._ensure_subject(subjects, actor, user_id)
                statement = statement.where(Clocking.user_id == normalize_id(user_id))
            elif not subjects.unrestricted:
                statement = statement.where(col(Clocking.user_id).in_(subjects.subject_ids))
            if project_id is not None:
                statement = statement.where(Clocking.project_id == project_id)
            statement = statement.order_by(col(Clocking.at).desc()).limit(limit)
            return list(session.exec(statement).all())

    def get_clocking(self, actor: Actor, clocking_id: str) -> Clocking:
        with self._session() as session:
            return self._get_accessible_clocking(session, actor, clocking_id)

    def get_audit(self, actor: Actor, clocking_id: str) -> list[AuditEntryRead]:
        clocking = self.get_clocking(actor, clocking_id)
        return [AuditEntryRead.model_validate(item) for item in clocking.edit_log]

    def create_clockings(self, actor: Actor, payload: ClockingCreate) -> ClockingBulkRead:
        """Create one clocking per target subject; each subject gets its own outcome."""
        if actor.org_id is None and not actor.is_global:
            raise AuthorizationError("actor has no organization scope")
        clock_type = _clock_type(payload.type)
        targets = payload.user_ids or [payload.user_id or actor.id]
        if targets == [None]:
            raise ValidationError("user_id required")
        subjects = self._visibility.accessible_subject_ids(actor)
        outcomes: list[ClockingBulkOutcome] = []
        created: list[Clocking] = []

        with self._session() as session:
            self._ensure_project(session, actor.org_id, payload.project_id)
            for raw in targets:
                user_id = normalize_id(raw)
                if user_id is None:
                    outcomes.append(ClockingBulkOutcome(user_id=str(raw), ok=False, error="invalid user id"))
                    continue
                if not subjects.contains(user_id):
                    outcomes.append(ClockingBulkOutcome(user_id=user_id, ok=False, error="user not visible"))
                    continue
                if not self._user_in_org(session, actor.org_id, user_id):
                    outcomes.append(ClockingBulkOutcome(user_id=user_id, ok=False, error="user not found"))
                    continue
                clocking = Clocking(
                    org_id=actor.org_id,
                    user_id=user_id,
                    project_id=payload.project_id,
                    type=clock_type,
                    at=payload.at or now_utc(),
                    notes=payload.notes,
                    location=payload.location.model_dump(exclude_none=True) if payload.location else None,
                    attachments=[item.model_dump(mode="json") for item in payload.attachments],
                    created_by=actor.id,
                )
                session.add(clocking)
                created.append(clocking)
                outcomes.append(ClockingBulkOutcome(user_id=user_id, ok=True, clocking_id=clocking.id))
            session.commit()

        for clocking in created:
            event_bus.publish_dict(
                "clocking.created",
                clocking.org_id,
                {"clocking_id": clocking.id, "user_id": clocking.user_id, "type": clocking.type},
                actor_id=actor.id,
            )
        return ClockingBulkRead(outcomes=outcomes, created_count=len(created))

    def update_clocking(self, actor: Actor, clocking_id: str, payload: ClockingUpdate) -> tuple[Clocking, bool]:
        fields_set = payload.model_fields_set - {"edit_note"}
        editor_id = self._resolver.resolve_actor_id(actor.claims)
        subjects = self._visibility.accessible_subject_ids(actor)

        for attempt in range(1, OCC_MAX_RETRIES + 1):
            with self._session() as session:
                clocking = self._get_scoped_clocking(session, actor, clocking_id)
                self._ensure_subject(subjects, actor, clocking.user_id)
                before = {name: getattr(clocking, name) for name in CLOCKING_TRACKED_FIELDS}
                after = dict(before)

                if "type" in fields_set and payload.type is not None:
                    after["type"] = _clock_type(payload.type)
                if "at" in fields_set and payload.at is not None:
                    after["at"] = payload.at
                if "notes" in fields_set and payload.notes is not None:
                    after["notes"] = payload.notes
                if "project_id" in fields_set:
                    self._ensure_project(session, clocking.org_id, payload.project_id)
                    after["project_id"] = payload.project_id
                if "user_id" in fields_set:
                    new_user = normalize_id(payload.user_id)
                    if new_user is None or not self._user_in_org(session, clocking.org_id, new_user):
                        raise ValidationError("user_id must reference a user of the organization")
                    self._ensure_subject(subjects, actor, new_user)
                    after["user_id"] = new_user
                if "location" in fields_set:
                    after["location"] = payload.location.model_dump(exclude_none=True) if payload.location else None
                if "attachments" in fields_set:
                    after["attachments"] = [item.model_dump(mode="json") for item in payload.attachments or []]

                changes = self._audit_trail.diff(before, after, CLOCKING_TRACKED_FIELDS)
                outcome = self._audit_trail.record_edit(clocking.edit_log, changes, editor_id, payload.edit_note)
                if not changes:
                    return clocking, False

                values: dict[str, Any] = {change.field: after[change.field] for change in changes}
                values["edit_log"] = outcome.edit_log
                values["updated_at"] = now_utc()
                if outcome.entry is not None:
                    values["last_edited_at"] = outcome.entry.edited_at
                    values["last_edited_by"] = outcome.entry.edited_by
                if compare_and_swap(session, Clocking, clocking.id, clocking.version, values):
                    session.commit()
                    session.refresh(clocking)
                    event_bus.publish_dict(
                        "clocking.updated",
                        clocking.org_id,
                        {
                            "clocking_id": clocking.id,
                            "fields": [change.field for change in changes],
                            "audit_skipped": outcome.audit_skipped,
                        },
                        actor_id=actor.id,
                    )
                    return clocking, outcome.audit_skipped
                session.rollback()
            logger.info(
                "clocking write conflict, retrying",
                extra={"clocking_id": clocking_id, "attempt": attempt},
            )
        raise ConflictError("clocking was modified concurrently")

    def delete_clocking(self, actor: Actor, clocking_id: str) -> None:
        with self._session() as session:
            clocking = self._get_accessible_clocking(session, actor, clocking_id)
            org_id = clocking.org_id
            session.delete(clocking)
            session.commit()
        event_bus.publish_dict("clocking.deleted", org_id, {"clocking_id": clocking_id}, actor_id=actor.id)
