from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any
from uuid import uuid4

from sqlalchemy import delete
from sqlmodel import Session, col, select

from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from fieldtask.domain.geofence import (
    MAX_FENCES_PER_ENTITY,
    boundary_warnings,
    dump_fences,
    fences_of,
    resolve_effective_fences,
)
from fieldtask.domain.lifecycle import (
    ActionEvent,
    append_event,
    compute_elapsed_minutes,
    delete_event,
    derive_status,
    dump_log,
    edit_event,
    load_log,
    parse_action,
)
from fieldtask.domain.models import (
    AssignmentKind,
    EffectiveFencesRead,
    FenceSetRead,
    Project,
    Task,
    TaskActionRequest,
    TaskAssignment,
    TaskCreate,
    TaskLogCreateRequest,
    TaskLogUpdateRequest,
    TaskPhotoRequest,
    TaskRead,
    TaskUpdate,
    now_utc,
)
from fieldtask.domain.permissions import parse_visibility_mode
from fieldtask.domain.state_machine import TaskAction, TaskStatus
from fieldtask.infra.db import OCC_MAX_RETRIES, compare_and_swap, get_engine
from fieldtask.infra.events import event_bus
from fieldtask.services.audit_trail_service import AuditTrail
from fieldtask.services.identity_resolver import IdentityResolver, normalize_id
from fieldtask.services.precondition_service import ActionContext, PreconditionGate
from fieldtask.services.project_service import fold_legacy_fence
from fieldtask.services.visibility_service import VisibilityEngine, org_scoped

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500

TASK_TRACKED_FIELDS = (
    "title",
    "description",
    "project_id",
    "priority",
    "tags",
    "due_at",
    "estimated_duration_min",
    "dependent_task_ids",
    "enforce_qr_scan",
    "enforce_location_check",
    "geo_fences",
    "visibility_mode",
    "assigned_user_ids",
    "assigned_group_ids",
)

# (task, session) -> column values to compare-and-swap, or None for no write
TaskMutation = Callable[[Task, Session], dict[str, Any] | None]


def _ordered_ids(values: Sequence[Any] | None, *extra: Any) -> list[str]:
    """Canonical ids in first-seen order with malformed entries dropped."""
    result: list[str] = []
    for raw in [*(values or []), *extra]:
        normalized = normalize_id(raw)
        if normalized is not None and normalized not in result:
            result.append(normalized)
    return result


def _sync_assignments(
    session: Session,
    task_id: str,
    org_id: str | None,
    user_ids: Sequence[str],
    group_ids: Sequence[str],
) -> None:
    """Replace the task's ``task_assignments`` rows with the given lists."""
    session.execute(delete(TaskAssignment).where(col(TaskAssignment.task_id) == task_id))
    for kind, subject_ids in ((AssignmentKind.USER, user_ids), (AssignmentKind.GROUP, group_ids)):
        for subject_id in dict.fromkeys(subject_ids):
            session.add(TaskAssignment(task_id=task_id, kind=kind.value, subject_id=subject_id, org_id=org_id))


class TaskService:
    def __init__(
        self,
        *,
        visibility: VisibilityEngine | None = None,
        gate: PreconditionGate | None = None,
        audit_trail: AuditTrail | None = None,
        resolver: IdentityResolver | None = None,
    ) -> None:
        self._visibility = visibility or VisibilityEngine()
        self._gate = gate or PreconditionGate()
        self._audit_trail = audit_trail or AuditTrail()
        self._resolver = resolver or IdentityResolver()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_task(self, session: Session, actor: Actor, task_id: str) -> Task:
        statement = org_scoped(select(Task).where(Task.id == task_id), Task, actor)
        task = session.exec(statement).first()
        if task is None:
            raise NotFoundError("task not found")
        return task

    def _get_visible_task(self, session: Session, actor: Actor, task_id: str) -> Task:
        task = self._get_scoped_task(session, actor, task_id)
        if not self._visibility.is_visible(actor, task):
            logger.info("task read denied", extra={"actor_id": actor.id, "task_id": task_id})
            raise AuthorizationError("task not visible to actor")
        return task

    def _project_lookup(self, session: Session, org_id: str | None) -> Callable[[str], Project | None]:
        def lookup(project_id: str) -> Project | None:
            statement = select(Project).where(Project.id == project_id)
            if org_id is not None:
                statement = statement.where(Project.org_id == org_id)
            return session.exec(statement).first()

        return lookup

    def _completed_ids(self, session: Session, org_id: str | None, task_ids: Sequence[str]) -> set[str]:
        if not task_ids:
            return set()
        statement = (
            select(Task.id)
            .where(col(Task.id).in_(list(task_ids)))
            .where(Task.status == TaskStatus.COMPLETED)
        )
        if org_id is not None:
            statement = statement.where(Task.org_id == org_id)
        return set(session.exec(statement).all())

    def _completed_counter(self, session: Session, org_id: str | None) -> Callable[[Sequence[str]], int]:
        def count(task_ids: Sequence[str]) -> int:
            return len(self._completed_ids(session, org_id, task_ids))

        return count

    def _warnings_for(self, session: Session, task: Any) -> list[str]:
        project_id = getattr(task, "project_id", None)
        if not project_id:
            return []
        project = self._project_lookup(session, getattr(task, "org_id", None))(project_id)
        if project is None:
            return []
        return boundary_warnings(fences_of(task), fences_of(project))

    def _to_read(
        self,
        session: Session,
        task: Task,
        warnings: list[str] | None = None,
        *,
        completed: set[str] | None = None,
    ) -> TaskRead:
        dependency_ids = list(dict.fromkeys(task.dependent_task_ids or []))
        if completed is None:
            completed = self._completed_ids(session, task.org_id, dependency_ids)
        blocked = any(dependency_id not in completed for dependency_id in dependency_ids)
        return TaskRead.model_validate(task).model_copy(
            update={
                "actual_duration_minutes": compute_elapsed_minutes(load_log(task.actual_duration_log)),
                "is_blocked": blocked,
                "warnings": warnings or [],
            }
        )

    def _to_reads(self, session: Session, tasks: Sequence[Task]) -> list[TaskRead]:
        """Build list rows with one completion query for every dependency on the page."""
        wanted = {dependency_id for task in tasks for dependency_id in task.dependent_task_ids or []}
        completed_by_org: dict[str | None, set[str]] = {}
        if wanted:
            statement = (
                select(Task.id, Task.org_id)
                .where(col(Task.id).in_(sorted(wanted)))
                .where(Task.status == TaskStatus.COMPLETED)
            )
            for dependency_id, org_id in session.exec(statement).all():
                completed_by_org.setdefault(org_id, set()).add(dependency_id)
        return [
            self._to_read(session, task, completed=completed_by_org.get(task.org_id, set()))
            for task in tasks
        ]

    def _reject_cycles(self, session: Session, org_id: str | None, task_id: str, dependency_ids: list[str]) -> None:
        """Walk the dependency graph from the new dependencies; reaching ``task_id`` again is a cycle."""
        seen = set(dependency_ids)
        frontier = list(dependency_ids)
        while frontier:
            statement = select(Task.id, Task.dependent_task_ids).where(col(Task.id).in_(frontier))
            if org_id is not None:
                statement = statement.where(Task.org_id == org_id)
            frontier = []
            for _, upstream in session.exec(statement).all():
                for upstream_id in upstream or []:
                    if upstream_id == task_id:
                        raise ValidationError("dependency cycle")
                    if upstream_id not in seen:
                        seen.add(upstream_id)
                        frontier.append(upstream_id)

    def _validate_references(
        self,
        session: Session,
        org_id: str | None,
        *,
        task_id: str | None,
        project_id: str | None,
        dependency_ids: list[str],
    ) -> None:
        if project_id and self._project_lookup(session, org_id)(project_id) is None:
            raise NotFoundError("project not found")
        if task_id is not None and task_id in dependency_ids:
            raise ValidationError("task cannot depend on itself")
        if dependency_ids:
            statement = select(Task.id).where(col(Task.id).in_(dependency_ids))
            if org_id is not None:
                statement = statement.where(Task.org_id == org_id)
            found = set(session.exec(statement).all())
            missing = [item for item in dependency_ids if item not in found]
            if missing:
                raise ValidationError(f"unknown dependency: {missing[0]}")
            if task_id is not None:
                self._reject_cycles(session, org_id, task_id, dependency_ids)

    def _mutate(
        self,
        actor: Actor,
        task_id: str,
        mutation: TaskMutation,
        *,
        action: str,
    ) -> Task:
        """Load, compute and compare-and-swap; retried when another writer got there first."""
        for attempt in range(1, OCC_MAX_RETRIES + 1):
            with self._session() as session:
                task = self._get_visible_task(session, actor, task_id)
                values = mutation(task, session)
                if values is None:
                    return task
                values["updated_at"] = now_utc()
                if compare_and_swap(session, Task, task.id, task.version, values):
                    session.commit()
                    session.refresh(task)
                    return task
                session.rollback()
            logger.info(
                "task write conflict, retrying",
                extra={"task_id": task_id, "attempt": attempt, "action": action},
            )
        raise ConflictError("task was modified concurrently")

    def create_task(self, actor: Actor, payload: TaskCreate) -> TaskRead:
        if actor.is_global:
            org_id = normalize_id(payload.org_id)
        elif actor.org_id is not None:
            org_id = actor.org_id
        else:
            raise AuthorizationError("actor has no organization scope")

        mode = parse_visibility_mode(payload.visibility_mode)
        self._visibility.ensure_can_mutate_visibility(actor, mode)
        dependency_ids = _ordered_ids(payload.dependent_task_ids)
        geo_fences = fold_legacy_fence(payload.geo_fences, payload.location_geo_fence)

        with self._session() as session:
            self._validate_references(
                session,
                org_id,
                task_id=None,
                project_id=payload.project_id,
                dependency_ids=dependency_ids,
            )
            task = Task(
                org_id=org_id,
                title=payload.title,
                description=payload.description,
                project_id=payload.project_id,
                priority=payload.priority,
                tags=list(payload.tags),
                due_at=payload.due_at,
                estimated_duration_min=payload.estimated_duration_min,
                dependent_task_ids=dependency_ids,
                enforce_qr_scan=payload.enforce_qr_scan,
                enforce_location_check=payload.enforce_location_check,
                geo_fences=geo_fences,
                visibility_mode=mode.value,
                assigned_user_ids=_ordered_ids(payload.assigned_user_ids, payload.assignee),
                assigned_group_ids=_ordered_ids(payload.assigned_group_ids, payload.group_id),
                created_by=actor.id,
            )
            session.add(task)
            session.flush()
            _sync_assignments(session, task.id, org_id, task.assigned_user_ids, task.assigned_group_ids)
            session.commit()
            session.refresh(task)
            warnings = self._warnings_for(session, task)
            result = self._to_read(session, task, warnings)

        event_bus.publish_dict(
            "task.created",
            task.org_id,
            {"task_id": task.id, "project_id": task.project_id, "visibility_mode": task.visibility_mode},
            actor_id=actor.id,
        )
        return result

    def list_tasks(
        self,
        actor: Actor,
        *,
        status: TaskStatus | None = None,
        project_id: str | None = None,
        limit: int = 100,
    ) -> list[TaskRead]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        visibility_filter = self._visibility.visibility_filter(actor)
        with self._session() as session:
            statement = org_scoped(select(Task), Task, actor)
            if status is not None:
                statement = statement.where(Task.status == status)
            if project_id is not None:
                statement = statement.where(Task.project_id == project_id)
            statement = (
                statement.where(visibility_filter.clause())
                .order_by(col(Task.created_at).desc(), col(Task.id))
                .limit(limit)
            )
            return self._to_reads(session, session.exec(statement).all())

    def get_task(self, actor: Actor, task_id: str) -> TaskRead:
        with self._session() as session:
            task = self._get_visible_task(session, actor, task_id)
            return self._to_read(session, task)

    def update_task(self, actor: Actor, task_id: str, payload: TaskUpdate) -> tuple[TaskRead, bool]:
        """Apply a partial edit with an audit entry; returns the task and whether auditing was skipped."""
        fields_set = payload.model_fields_set - {"edit_note"}
        editor_id = self._resolver.resolve_actor_id(actor.claims)
        audit_skipped = False

        def mutation(task: Task, session: Session) -> dict[str, Any] | None:
            nonlocal audit_skipped
            before = {name: getattr(task, name) for name in TASK_TRACKED_FIELDS}
            after = dict(before)
            for name in ("title", "description", "project_id", "priority", "tags", "due_at",
                         "estimated_duration_min", "enforce_qr_scan", "enforce_location_check"):
                if name in fields_set:
                    after[name] = getattr(payload, name)
            if after["title"] is None or after["priority"] is None or after["tags"] is None:
                raise ValidationError("title, priority and tags cannot be cleared")
            if after["enforce_qr_scan"] is None or after["enforce_location_check"] is None:
                raise ValidationError("enforcement flags cannot be cleared")
            if "dependent_task_ids" in fields_set:
                after["dependent_task_ids"] = _ordered_ids(payload.dependent_task_ids)
            if "visibility_mode" in fields_set:
                mode = parse_visibility_mode(payload.visibility_mode)
                self._visibility.ensure_can_mutate_visibility(actor, mode)
                after["visibility_mode"] = mode.value
            if fields_set & {"assigned_user_ids", "assignee"}:
                base = payload.assigned_user_ids if "assigned_user_ids" in fields_set else task.assigned_user_ids
                after["assigned_user_ids"] = _ordered_ids(base, payload.assignee)
            if fields_set & {"assigned_group_ids", "group_id"}:
                base = payload.assigned_group_ids if "assigned_group_ids" in fields_set else task.assigned_group_ids
                after["assigned_group_ids"] = _ordered_ids(base, payload.group_id)
            extra: dict[str, Any] = {}
            if fields_set & {"geo_fences", "location_geo_fence"}:
                base_fences = payload.geo_fences if "geo_fences" in fields_set else task.geo_fences
                after["geo_fences"] = fold_legacy_fence(list(base_fences or []), payload.location_geo_fence)
                extra["location_geo_fence"] = None

            self._validate_references(
                session,
                task.org_id,
                task_id=task.id,
                project_id=after["project_id"] if "project_id" in fields_set else None,
                dependency_ids=after["dependent_task_ids"] if "dependent_task_ids" in fields_set else [],
            )
            changes = self._audit_trail.diff(before, after, TASK_TRACKED_FIELDS)
            outcome = self._audit_trail.record_edit(task.edit_log, changes, editor_id, payload.edit_note)
            audit_skipped = outcome.audit_skipped
            if not changes:
                return None
            values = {change.field: after[change.field] for change in changes}
            if {"assigned_user_ids", "assigned_group_ids"} & values.keys():
                _sync_assignments(
                    session, task.id, task.org_id, after["assigned_user_ids"], after["assigned_group_ids"]
                )
            values.update(extra)
            values["edit_log"] = outcome.edit_log
            if outcome.entry is not None:
                values["last_edited_at"] = outcome.entry.edited_at
                values["last_edited_by"] = outcome.entry.edited_by
            return values

        task = self._mutate(actor, task_id, mutation, action="update")
        with self._session() as session:
            result = self._to_read(session, task, self._warnings_for(session, task))
        if audit_skipped:
            logger.warning("task edit saved without audit entry", extra={"task_id": task_id, "actor_id": actor.id})
        event_bus.publish_dict(
            "task.updated",
            task.org_id,
            {"task_id": task.id, "audit_skipped": audit_skipped},
            actor_id=actor.id,
        )
        return result, audit_skipped

    def delete_task(self, actor: Actor, task_id: str) -> None:
        with self._session() as session:
            task = self._get_visible_task(session, actor, task_id)
            org_id = task.org_id
            session.execute(delete(TaskAssignment).where(col(TaskAssignment.task_id) == task.id))
            session.delete(task)
            session.commit()
        event_bus.publish_dict("task.deleted", org_id, {"task_id": task_id}, actor_id=actor.id)

    def perform_action(self, actor: Actor, task_id: str, payload: TaskActionRequest) -> TaskRead:
        action = parse_action(payload.action)
        context = ActionContext(
            lat=payload.lat,
            lng=payload.lng,
            qr_token=payload.qr_token,
            admin_override=payload.admin_override,
        )
        decision_holder: dict[str, Any] = {}

        def mutation(task: Task, session: Session) -> dict[str, Any]:
            decision_holder["org_id"] = task.org_id
            decision = self._gate.check(
                actor,
                task,
                action,
                context,
                completed_count=self._completed_counter(session, task.org_id),
                project_lookup=self._project_lookup(session, task.org_id),
            )
            decision_holder["decision"] = decision
            event = ActionEvent(
                action=action,
                at=now_utc(),
                actor_id=actor.id,
                actor_name=actor.claims.get("username"),
                actor_email=actor.claims.get("email"),
                note=payload.note,
                milestone_id=payload.milestone_id,
            )
            events = append_event(load_log(task.actual_duration_log), event)
            return {
                "actual_duration_log": dump_log(events),
                "status": derive_status(events, task.status),
            }

        try:
            task = self._mutate(actor, task_id, mutation, action=str(action))
        except PreconditionError as exc:
            event_bus.publish_dict(
                "task.action.rejected",
                decision_holder.get("org_id", actor.org_id),
                {"task_id": task_id, "action": str(action), "reason_code": exc.reason_code},
                actor_id=actor.id,
            )
            raise
        decision = decision_holder.get("decision")
        event_bus.publish_dict(
            "task.action",
            task.org_id,
            {
                "task_id": task.id,
                "action": str(action),
                "status": str(task.status),
                "overridden": bool(decision and decision.overridden),
            },
            actor_id=actor.id,
        )
        with self._session() as session:
            return self._to_read(session, task)

    def _log_mutation(
        self,
        actor: Actor,
        task_id: str,
        rewrite: Callable[[list[ActionEvent]], list[ActionEvent]],
        *,
        event_type: str,
        detail: dict[str, Any],
    ) -> TaskRead:
        def mutation(task: Task, session: Session) -> dict[str, Any]:
            events = rewrite(load_log(task.actual_duration_log))
            return {
                "actual_duration_log": dump_log(events),
                "status": derive_status(events, task.status),
            }

        task = self._mutate(actor, task_id, mutation, action=event_type)
        event_bus.publish_dict(
            event_type,
            task.org_id,
            {"task_id": task.id, "status": str(task.status), **detail},
            actor_id=actor.id,
        )
        with self._session() as session:
            return self._to_read(session, task)

    def add_log_row(self, actor: Actor, task_id: str, payload: TaskLogCreateRequest) -> TaskRead:
        event = ActionEvent(
            action=parse_action(payload.action),
            at=payload.at or now_utc(),
            actor_id=actor.id,
            actor_name=actor.claims.get("username"),
            actor_email=actor.claims.get("email"),
            note=payload.note,
        )
        return self._log_mutation(
            actor,
            task_id,
            lambda events: append_event(events, event),
            event_type="task.log.added",
            detail={"log_id": event.id, "action": str(event.action)},
        )

    def edit_log_row(self, actor: Actor, task_id: str, log_id: str, payload: TaskLogUpdateRequest) -> TaskRead:
        patch = payload.model_dump(exclude_unset=True)
        return self._log_mutation(
            actor,
            task_id,
            lambda events: edit_event(events, log_id, patch, edited_by=actor.id),
            event_type="task.log.edited",
            detail={"log_id": log_id},
        )

    def delete_log_row(self, actor: Actor, task_id: str, log_id: str) -> TaskRead:
        return self._log_mutation(
            actor,
            task_id,
            lambda events: delete_event(events, log_id),
            event_type="task.log.deleted",
            detail={"log_id": log_id},
        )

    def add_photo(self, actor: Actor, task_id: str, payload: TaskPhotoRequest) -> TaskRead:
        uploaded_at = now_utc()
        attachment = {
            "id": str(uuid4()),
            "filename": payload.filename,
            "url": payload.url,
            "mime": payload.mime,
            "size": payload.size,
            "note": payload.note,
            "geo": payload.geo.model_dump() if payload.geo is not None else None,
            "uploaded_by": actor.claims.get("email") or actor.id,
            "uploaded_at": uploaded_at.isoformat(),
        }
        event = ActionEvent(
            action=TaskAction.PHOTO,
            at=uploaded_at,
            actor_id=actor.id,
            actor_email=actor.claims.get("email"),
            note=payload.note,
        )

        def mutation(task: Task, session: Session) -> dict[str, Any]:
            events = append_event(load_log(task.actual_duration_log), event)
            return {
                "attachments": [*task.attachments, attachment],
                "actual_duration_log": dump_log(events),
            }

        task = self._mutate(actor, task_id, mutation, action="photo")
        event_bus.publish_dict(
            "task.photo.added",
            task.org_id,
            {"task_id": task.id, "attachment_id": attachment["id"]},
            actor_id=actor.id,
        )
        with self._session() as session:
            return self._to_read(session, task)

    def read_fences(self, actor: Actor, task_id: str) -> FenceSetRead:
        with self._session() as session:
            task = self._get_visible_task(session, actor, task_id)
            fences = dump_fences(fences_of(task))
            return FenceSetRead(fences=fences, count=len(fences), warnings=self._warnings_for(session, task))

    def effective_fences(self, actor: Actor, task_id: str) -> EffectiveFencesRead:
        with self._session() as session:
            task = self._get_visible_task(session, actor, task_id)
            fences, source = resolve_effective_fences(task, self._project_lookup(session, task.org_id))
            return EffectiveFencesRead(fences=dump_fences(fences), source=source)

    def _write_fences(
        self,
        actor: Actor,
        task_id: str,
        incoming: list[dict[str, Any]],
        *,
        replace: bool,
        event_type: str,
    ) -> FenceSetRead:
        def mutation(task: Task, session: Session) -> dict[str, Any]:
            current = [] if replace else dump_fences(fences_of(task))
            if len(current) + len(incoming) > MAX_FENCES_PER_ENTITY:
                raise ValidationError(f"at most {MAX_FENCES_PER_ENTITY} geofences per entity")
            return {
                "geo_fences": fold_legacy_fence([*current, *incoming], None),
                "location_geo_fence": None,
            }

        task = self._mutate(actor, task_id, mutation, action=event_type)
        with self._session() as session:
            warnings = self._warnings_for(session, task)
        event_bus.publish_dict(
            event_type,
            task.org_id,
            {"task_id": task.id, "fence_count": len(task.geo_fences)},
            actor_id=actor.id,
        )
        return FenceSetRead(fences=task.geo_fences, count=len(task.geo_fences), warnings=warnings)

    def import_fences(self, actor: Actor, task_id: str, fences: list[dict[str, Any]]) -> FenceSetRead:
        return self._write_fences(actor, task_id, fences, replace=False, event_type="task.fences.imported")

    def replace_fences(self, actor: Actor, task_id: str, fences: list[dict[str, Any]]) -> FenceSetRead:
        return self._write_fences(actor, task_id, fences, replace=True, event_type="task.fences.replaced")

    def clear_fences(self, actor: Actor, task_id: str) -> FenceSetRead:
        return self._write_fences(actor, task_id, [], replace=True, event_type="task.fences.cleared")

