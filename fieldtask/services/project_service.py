from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import ConflictError, NotFoundError, ValidationError
from fieldtask.domain.geofence import (
    MAX_FENCES_PER_ENTITY,
    LegacyCircleFence,
    dump_fences,
    fences_of,
    parse_fences,
)
from fieldtask.domain.models import FenceSetRead, Project, ProjectCreate, now_utc
from fieldtask.infra.db import OCC_MAX_RETRIES, compare_and_swap, get_engine
from fieldtask.infra.events import event_bus
from fieldtask.services.visibility_service import org_scoped

logger = logging.getLogger(__name__)


def fold_legacy_fence(
    geo_fences: list[dict[str, Any]],
    legacy: dict[str, Any] | None,
) -> list[dict[str, Any]]:
    """Validate incoming fences and fold a legacy ``{lat, lng, radius}`` circle into the list."""
    fences = parse_fences(geo_fences)
    if legacy:
        try:
            fences.insert(0, LegacyCircleFence.model_validate(legacy).to_fence())
        except ValueError as exc:
            raise ValidationError("invalid legacy location geofence") from exc
    if len(fences) > MAX_FENCES_PER_ENTITY:
        raise ValidationError(f"at most {MAX_FENCES_PER_ENTITY} geofences per entity")
    return dump_fences(fences)


class ProjectService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_project(self, session: Session, actor: Actor, project_id: str) -> Project:
        statement = org_scoped(select(Project).where(Project.id == project_id), Project, actor)
        project = session.exec(statement).first()
        if project is None:
            raise NotFoundError("project not found")
        return project

    def create_project(self, actor: Actor, payload: ProjectCreate, *, org_id: str | None = None) -> Project:
        target_org = actor.org_id or (org_id if actor.is_global else None)
        if target_org is None:
            raise ValidationError("organization is required")
        with self._session() as session:
            project = Project(
                org_id=target_org,
                name=payload.name,
                description=payload.description,
                geo_fences=fold_legacy_fence(payload.geo_fences, payload.location_geo_fence),
                created_by=actor.id,
            )
            session.add(project)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("project name already exists in organization") from exc
            session.refresh(project)

        event_bus.publish_dict(
            "project.created",
            project.org_id,
            {"project_id": project.id, "fence_count": len(project.geo_fences)},
            actor_id=actor.id,
        )
        return project

    def list_projects(self, actor: Actor) -> list[Project]:
        with self._session() as session:
            statement = org_scoped(select(Project), Project, actor).order_by(Project.name)
            return list(session.exec(statement).all())

    def get_project(self, actor: Actor, project_id: str) -> Project:
        with self._session() as session:
            return self._get_scoped_project(session, actor, project_id)

    def read_fences(self, actor: Actor, project_id: str) -> FenceSetRead:
        project = self.get_project(actor, project_id)
        fences = dump_fences(fences_of(project))
        return FenceSetRead(fences=fences, count=len(fences))

    def _write_fences(
        self,
        actor: Actor,
        project_id: str,
        incoming: list[dict[str, Any]],
        *,
        replace: bool,
        event_type: str,
    ) -> FenceSetRead:
        for attempt in range(1, OCC_MAX_RETRIES + 1):
            with self._session() as session:
                project = self._get_scoped_project(session, actor, project_id)
                current = [] if replace else dump_fences(fences_of(project))
                merged = fold_legacy_fence([*current, *incoming], None)
                swapped = compare_and_swap(
                    session,
                    Project,
                    project.id,
                    project.version,
                    {"geo_fences": merged, "location_geo_fence": None, "updated_at": now_utc()},
                )
                if swapped:
                    session.commit()
                    event_bus.publish_dict(
                        event_type,
                        project.org_id,
                        {"project_id": project.id, "fence_count": len(merged)},
                        actor_id=actor.id,
                    )
                    return FenceSetRead(fences=merged, count=len(merged))
                session.rollback()
            logger.info("project write conflict, retrying", extra={"attempt": attempt, "action": event_type})
        raise ConflictError("project was modified concurrently")

    def import_fences(self, actor: Actor, project_id: str, fences: list[dict[str, Any]]) -> FenceSetRead:
        return self._write_fences(actor, project_id, fences, replace=False, event_type="project.fences.imported")

    def replace_fences(self, actor: Actor, project_id: str, fences: list[dict[str, Any]]) -> FenceSetRead:
        return self._write_fences(actor, project_id, fences, replace=True, event_type="project.fences.replaced")

    def clear_fences(self, actor: Actor, project_id: str) -> FenceSetRead:
        return self._write_fences(actor, project_id, [], replace=True, event_type="project.fences.cleared")
