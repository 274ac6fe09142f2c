from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from fieldtask.api.deps import get_current_actor, http_error, require_roles
from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import FieldTaskError
from fieldtask.domain.models import FenceImportRequest, FenceSetRead, ProjectCreate, ProjectRead
from fieldtask.domain.permissions import Role
from fieldtask.infra.audit import set_audit_context
from fieldtask.services.project_service import ProjectService

router = APIRouter()


def get_project_service() -> ProjectService:
    return ProjectService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Manager = Annotated[Actor, Depends(require_roles(Role.MANAGER, Role.ADMIN, Role.SUPERADMIN))]
Service = Annotated[ProjectService, Depends(get_project_service)]


def _handle_error(exc: FieldTaskError) -> None:
    raise http_error(exc) from exc


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreate,
    actor: Manager,
    service: Service,
    request: Request,
    org_id: str | None = None,
) -> ProjectRead:
    set_audit_context(request, action="project.create")
    try:
        return ProjectRead.model_validate(service.create_project(actor, payload, org_id=org_id))
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("", response_model=list[ProjectRead])
def list_projects(actor: CurrentActor, service: Service) -> list[ProjectRead]:
    return [ProjectRead.model_validate(item) for item in service.list_projects(actor)]


@router.get("/{project_id}", response_model=ProjectRead)
def get_project(project_id: str, actor: CurrentActor, service: Service) -> ProjectRead:
    try:
        return ProjectRead.model_validate(service.get_project(actor, project_id))
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/{project_id}/geofences", response_model=FenceSetRead)
def read_fences(project_id: str, actor: CurrentActor, service: Service) -> FenceSetRead:
    try:
        return service.read_fences(actor, project_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.post("/{project_id}/geofences", response_model=FenceSetRead)
def import_fences(
    project_id: str,
    payload: FenceImportRequest,
    actor: Manager,
    service: Service,
) -> FenceSetRead:
    try:
        return service.import_fences(actor, project_id, payload.fences)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.put("/{project_id}/geofences", response_model=FenceSetRead)
def replace_fences(
    project_id: str,
    payload: FenceImportRequest,
    actor: Manager,
    service: Service,
) -> FenceSetRead:
    try:
        return service.replace_fences(actor, project_id, payload.fences)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.delete("/{project_id}/geofences", response_model=FenceSetRead)
def clear_fences(project_id: str, actor: Manager, service: Service) -> FenceSetRead:
    try:
        return service.clear_fences(actor, project_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
