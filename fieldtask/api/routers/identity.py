from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from fieldtask.api.deps import get_current_actor, http_error, require_roles
from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import FieldTaskError
from fieldtask.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    GroupCreate,
    GroupMemberRead,
    GroupRead,
    OrganizationCreate,
    OrganizationRead,
    TokenResponse,
    UserCreate,
    UserRead,
)
from fieldtask.domain.permissions import Role
from fieldtask.infra.audit import set_audit_context
from fieldtask.infra.auth import create_access_token
from fieldtask.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Admin = Annotated[Actor, Depends(require_roles(Role.ADMIN, Role.SUPERADMIN))]
Manager = Annotated[Actor, Depends(require_roles(Role.MANAGER, Role.ADMIN, Role.SUPERADMIN))]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_error(exc: FieldTaskError) -> None:
    raise http_error(exc) from exc


def _org_of(actor: Actor, org_id: str | None = None) -> str:
    if actor.is_global and org_id:
        return org_id
    if actor.org_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="no organization scope")
    return actor.org_id


@router.post("/organizations", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(payload: OrganizationCreate, service: Service) -> OrganizationRead:
    try:
        org = service.create_organization(payload)
        return OrganizationRead.model_validate(org)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/organizations", response_model=list[OrganizationRead])
def list_organizations(actor: CurrentActor, service: Service) -> list[OrganizationRead]:
    return [OrganizationRead.model_validate(item) for item in service.list_organizations(actor)]


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.org_id, payload.username, payload.password)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
    token = create_access_token(
        user_id=user.id,
        org_id=user.org_id,
        role=user.role.value,
        email=user.email,
        username=user.username,
    )
    return TokenResponse(access_token=token, role=user.role)


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    actor: Admin,
    service: Service,
    request: Request,
    org_id: str | None = None,
) -> UserRead:
    target_org = _org_of(actor, org_id)
    set_audit_context(request, action="identity.user.create", detail={"what": {"role": payload.role.value}})
    try:
        user = service.create_user(target_org, payload, created_by_role=actor.role)
        return UserRead.model_validate(user)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/users", response_model=list[UserRead])
def list_users(actor: Manager, service: Service, org_id: str | None = None) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users(_org_of(actor, org_id))]


@router.get("/users/{user_id}", response_model=UserRead)
def get_user(user_id: str, actor: Manager, service: Service, org_id: str | None = None) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(_org_of(actor, org_id), user_id))
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.post("/groups", response_model=GroupRead, status_code=status.HTTP_201_CREATED)
def create_group(payload: GroupCreate, actor: Manager, service: Service, org_id: str | None = None) -> GroupRead:
    try:
        return GroupRead.model_validate(service.create_group(_org_of(actor, org_id), payload))
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.get("/groups", response_model=list[GroupRead])
def list_groups(actor: CurrentActor, service: Service, org_id: str | None = None) -> list[GroupRead]:
    return [GroupRead.model_validate(item) for item in service.list_groups(_org_of(actor, org_id))]


@router.get("/groups/{group_id}/members", response_model=list[GroupMemberRead])
def list_group_members(
    group_id: str,
    actor: Manager,
    service: Service,
    org_id: str | None = None,
) -> list[GroupMemberRead]:
    try:
        members = service.list_group_members(_org_of(actor, org_id), group_id)
        return [GroupMemberRead.model_validate(item) for item in members]
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.post(
    "/groups/{group_id}/members/{user_id}",
    response_model=GroupMemberRead,
    status_code=status.HTTP_201_CREATED,
)
def add_group_member(
    group_id: str,
    user_id: str,
    actor: Manager,
    service: Service,
    org_id: str | None = None,
) -> GroupMemberRead:
    try:
        return GroupMemberRead.model_validate(service.add_group_member(_org_of(actor, org_id), group_id, user_id))
    except FieldTaskError as exc:
        _handle_error(exc)
        raise


@router.delete("/groups/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_group_member(
    group_id: str,
    user_id: str,
    actor: Manager,
    service: Service,
    org_id: str | None = None,
) -> Response:
    try:
        service.remove_group_member(_org_of(actor, org_id), group_id, user_id)
    except FieldTaskError as exc:
        _handle_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
