from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status

from fieldtask.api.deps import get_current_actor, get_identity_resolver, http_error
from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import FieldTaskError
from fieldtask.domain.models import (
    AuditEntryRead,
    ClockingBulkRead,
    ClockingCreate,
    ClockingRead,
    ClockingUpdate,
)
from fieldtask.infra.audit import set_audit_context
from fieldtask.services.audit_trail_service import AUDIT_SKIPPED_HEADER
from fieldtask.services.clocking_service import MAX_LIST_LIMIT, ClockingService

router = APIRouter()


def get_clocking_service() -> ClockingService:
    return ClockingService(resolver=get_identity_resolver())


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Service = Annotated[ClockingService, Depends(get_clocking_service)]


def _handle_error(exc: FieldTaskError) -> None:
    raise http_error(exc) from exc


@router.get("", response_model=list[ClockingRead])
def list_clockings(
    actor: CurrentActor,
    service: Service,
    user_id: str | None = None,
    project_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=MAX_LIST_LIMIT)] = 200,
) -> list[ClockingRead]:
    try:
        rows = service.list_clockings(actor, user_id=user_id, project_id=project_id, limit=limit)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
    return [ClockingRead.model_validate(item) for item in rows]


@router.post("", response_model=ClockingBulkRead, status_code=status.HTTP_201_CREATED)
def create_clockings(
    payload: ClockingCreate,
    actor: CurrentActor,
    service: Service,
    request: Request,
) -> ClockingBulkRead:
    set_audit_context(request, action="clocking.create", detail={"what": {"bulk": bool(payload.user_ids)}})
    try:
        return service.create_clockings(actor, payload)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/{clocking_id}", response_model=ClockingRead)
def get_clocking(clocking_id: str, actor: CurrentActor, service: Service) -> ClockingRead:
    try:
        return ClockingRead.model_validate(service.get_clocking(actor, clocking_id))
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/{clocking_id}/audit", response_model=list[AuditEntryRead])
def get_clocking_audit(clocking_id: str, actor: CurrentActor, service: Service) -> list[AuditEntryRead]:
    try:
        return service.get_audit(actor, clocking_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.put("/{clocking_id}", response_model=ClockingRead)
def update_clocking(
    clocking_id: str,
    payload: ClockingUpdate,
    actor: CurrentActor,
    service: Service,
    request: Request,
    response: Response,
) -> ClockingRead:
    set_audit_context(request, action="clocking.update", resource=f"clocking:{clocking_id}")
    try:
        clocking, audit_skipped = service.update_clocking(actor, clocking_id, payload)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
    if audit_skipped:
        response.headers[AUDIT_SKIPPED_HEADER[0]] = AUDIT_SKIPPED_HEADER[1]
    return ClockingRead.model_validate(clocking)


@router.delete("/{clocking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_clocking(clocking_id: str, actor: CurrentActor, service: Service, request: Request) -> Response:
    set_audit_context(request, action="clocking.delete", resource=f"clocking:{clocking_id}")
    try:
        service.delete_clocking(actor, clocking_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
