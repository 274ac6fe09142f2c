from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status

from fieldtask.api.deps import get_current_actor, get_identity_resolver, http_error, require_roles
from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import FieldTaskError, PreconditionError
from fieldtask.domain.models import (
    EffectiveFencesRead,
    FenceImportRequest,
    FenceSetRead,
    TaskActionRequest,
    TaskCreate,
    TaskLogCreateRequest,
    TaskLogUpdateRequest,
    TaskPhotoRequest,
    TaskRead,
    TaskUpdate,
)
from fieldtask.domain.permissions import Role
from fieldtask.domain.state_machine import TaskStatus
from fieldtask.infra.audit import set_audit_context
from fieldtask.services.audit_trail_service import AUDIT_SKIPPED_HEADER
from fieldtask.services.task_service import MAX_LIST_LIMIT, TaskService

router = APIRouter()


def get_task_service() -> TaskService:
    return TaskService(resolver=get_identity_resolver())


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Manager = Annotated[Actor, Depends(require_roles(Role.MANAGER, Role.ADMIN, Role.SUPERADMIN))]
Service = Annotated[TaskService, Depends(get_task_service)]


def _handle_error(exc: FieldTaskError, request: Request | None = None) -> None:
    if request is not None and isinstance(exc, PreconditionError):
        set_audit_context(
            request,
            detail={"result": {"outcome": "rejected", "reason_code": exc.reason_code}},
        )
    raise http_error(exc) from exc


@router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreate, actor: Manager, service: Service, request: Request) -> TaskRead:
    set_audit_context(request, action="task.create")
    try:
        return service.create_task(actor, payload)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("", response_model=list[TaskRead])
def list_tasks(
    actor: CurrentActor,
    service: Service,
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
    project_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=MAX_LIST_LIMIT)] = 100,
) -> list[TaskRead]:
    return service.list_tasks(actor, status=status_filter, project_id=project_id, limit=limit)


@router.get("/{task_id}", response_model=TaskRead)
def get_task(task_id: str, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        return service.get_task(actor, task_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.put("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    actor: Manager,
    service: Service,
    request: Request,
    response: Response,
) -> TaskRead:
    set_audit_context(request, action="task.update", resource=f"task:{task_id}")
    try:
        task, audit_skipped = service.update_task(actor, task_id, payload)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
    if audit_skipped:
        response.headers[AUDIT_SKIPPED_HEADER[0]] = AUDIT_SKIPPED_HEADER[1]
    return task


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: str, actor: Manager, service: Service, request: Request) -> Response:
    set_audit_context(request, action="task.delete", resource=f"task:{task_id}")
    try:
        service.delete_task(actor, task_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{task_id}/action", response_model=TaskRead)
def perform_action(
    task_id: str,
    payload: TaskActionRequest,
    actor: CurrentActor,
    service: Service,
    request: Request,
) -> TaskRead:
    set_audit_context(
        request,
        action=f"task.action.{payload.action}",
        resource=f"task:{task_id}",
        detail={"what": {"admin_override": payload.admin_override}},
    )
    try:
        return service.perform_action(actor, task_id, payload)
    except FieldTaskError as exc:
        _handle_error(exc, request)
        raise


@router.post("/{task_id}/logs", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def add_log_row(
    task_id: str,
    payload: TaskLogCreateRequest,
    actor: Manager,
    service: Service,
) -> TaskRead:
    try:
        return service.add_log_row(actor, task_id, payload)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.patch("/{task_id}/logs/{log_id}", response_model=TaskRead)
def edit_log_row(
    task_id: str,
    log_id: str,
    payload: TaskLogUpdateRequest,
    actor: Manager,
    service: Service,
) -> TaskRead:
    try:
        return service.edit_log_row(actor, task_id, log_id, payload)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.delete("/{task_id}/logs/{log_id}", response_model=TaskRead)
def delete_log_row(task_id: str, log_id: str, actor: Manager, service: Service) -> TaskRead:
    try:
        return service.delete_log_row(actor, task_id, log_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.post("/{task_id}/photos", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def add_photo(task_id: str, payload: TaskPhotoRequest, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        return service.add_photo(actor, task_id, payload)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/{task_id}/geofences", response_model=FenceSetRead)
def read_fences(task_id: str, actor: CurrentActor, service: Service) -> FenceSetRead:
    try:
        return service.read_fences(actor, task_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/{task_id}/geofences/effective", response_model=EffectiveFencesRead)
def effective_fences(task_id: str, actor: CurrentActor, service: Service) -> EffectiveFencesRead:
    try:
        return service.effective_fences(actor, task_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.post("/{task_id}/geofences", response_model=FenceSetRead)
def import_fences(
    task_id: str,
    payload: FenceImportRequest,
    actor: Manager,
    service: Service,
) -> FenceSetRead:
    try:
        return service.import_fences(actor, task_id, payload.fences)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.put("/{task_id}/geofences", response_model=FenceSetRead)
def replace_fences(
    task_id: str,
    payload: FenceImportRequest,
    actor: Manager,
    service: Service,
) -> FenceSetRead:
    try:
        return service.replace_fences(actor, task_id, payload.fences)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.delete("/{task_id}/geofences", response_model=FenceSetRead)
def clear_fences(task_id: str, actor: Manager, service: Service) -> FenceSetRead:
    try:
        return service.clear_fences(actor, task_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
