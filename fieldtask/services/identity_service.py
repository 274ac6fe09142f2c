from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Mapping
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, or_, select

from fieldtask.domain.actor import Actor, SpecificScope
from fieldtask.domain.errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError
from fieldtask.domain.models import (
    BootstrapAdminRequest,
    Group,
    GroupCreate,
    GroupMember,
    Organization,
    OrganizationCreate,
    User,
    UserCreate,
)
from fieldtask.domain.permissions import Role, parse_role
from fieldtask.infra.db import get_engine
from fieldtask.services.identity_resolver import normalize_id, resolve_org_scope

PASSWORD_SALT = os.getenv("PASSWORD_SALT", "fieldtask-dev-salt")

logger = logging.getLogger(__name__)


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        return hashlib.sha256(f"{PASSWORD_SALT}:{raw_password}".encode()).hexdigest()

    def _get_scoped_user(self, session: Session, org_id: str, user_id: str) -> User:
        user = session.exec(select(User).where(User.org_id == org_id).where(User.id == user_id)).first()
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _get_scoped_group(self, session: Session, org_id: str, group_id: str) -> Group:
        group = session.exec(select(Group).where(Group.org_id == org_id).where(Group.id == group_id)).first()
        if group is None:
            raise NotFoundError("group not found")
        return group

    def create_organization(self, payload: OrganizationCreate) -> Organization:
        with self._session() as session:
            org = Organization(name=payload.name)
            session.add(org)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("organization name already exists") from exc
            session.refresh(org)
            return org

    def list_organizations(self, actor: Actor) -> list[Organization]:
        with self._session() as session:
            if actor.is_global:
                return list(session.exec(select(Organization)).all())
            if actor.org_id is None:
                return []
            org = session.get(Organization, actor.org_id)
            return [org] if org is not None else []

    def get_organization(self, org_id: str) -> Organization:
        with self._session() as session:
            org = session.get(Organization, org_id)
            if org is None:
                raise NotFoundError("organization not found")
            return org

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            if session.get(Organization, payload.org_id) is None:
                raise NotFoundError("organization not found")
            existing = session.exec(select(User).where(User.org_id == payload.org_id)).first()
            if existing is not None:
                raise ConflictError("organization already initialized")

            admin_user = User(
                org_id=payload.org_id,
                username=payload.username,
                email=payload.email,
                password_hash=self._hash_password(payload.password),
                role=Role.ADMIN,
                is_active=True,
            )
            session.add(admin_user)
            session.commit()
            session.refresh(admin_user)
            logger.info("organization bootstrapped", extra={"org_id": payload.org_id, "actor_id": admin_user.id})
            return admin_user

    def create_user(self, org_id: str, payload: UserCreate, *, created_by_role: Role) -> User:
        if payload.role == Role.SUPERADMIN and created_by_role != Role.SUPERADMIN:
            raise AuthorizationError("only a superadmin may grant superadmin")
        with self._session() as session:
            if session.get(Organization, org_id) is None:
                raise NotFoundError("organization not found")
            user = User(
                org_id=org_id,
                username=payload.username,
                email=payload.email,
                password_hash=self._hash_password(payload.password),
                role=payload.role,
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists in organization") from exc
            session.refresh(user)
            return user

    def list_users(self, org_id: str) -> list[User]:
        with self._session() as session:
            return list(session.exec(select(User).where(User.org_id == org_id)).all())

    def get_user(self, org_id: str, user_id: str) -> User:
        with self._session() as session:
            return self._get_scoped_user(session, org_id, user_id)

    def create_group(self, org_id: str, payload: GroupCreate) -> Group:
        with self._session() as session:
            group = Group(org_id=org_id, name=payload.name)
            session.add(group)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("group name already exists in organization") from exc
            session.refresh(group)
            return group

    def list_groups(self, org_id: str) -> list[Group]:
        with self._session() as session:
            return list(session.exec(select(Group).where(Group.org_id == org_id)).all())

    def add_group_member(self, org_id: str, group_id: str, user_id: str) -> GroupMember:
        with self._session() as session:
            self._get_scoped_group(session, org_id, group_id)
            self._get_scoped_user(session, org_id, user_id)
            existing = session.get(GroupMember, (group_id, user_id))
            if existing is not None:
                return existing
            member = GroupMember(org_id=org_id, group_id=group_id, user_id=user_id)
            session.add(member)
            session.commit()
            session.refresh(member)
            return member

    def remove_group_member(self, org_id: str, group_id: str, user_id: str) -> None:
        with self._session() as session:
            self._get_scoped_group(session, org_id, group_id)
            member = session.get(GroupMember, (group_id, user_id))
            if member is None or member.org_id != org_id:
                raise NotFoundError("group member not found")
            session.delete(member)
            session.commit()

    def list_group_members(self, org_id: str, group_id: str) -> list[GroupMember]:
        with self._session() as session:
            self._get_scoped_group(session, org_id, group_id)
            statement = select(GroupMember).where(GroupMember.org_id == org_id).where(GroupMember.group_id == group_id)
            return list(session.exec(statement).all())

    def group_ids_for_user(self, org_id: str | None, user_id: str) -> frozenset[str]:
        with self._session() as session:
            statement = select(GroupMember.group_id).where(GroupMember.user_id == user_id)
            if org_id is not None:
                statement = statement.where(GroupMember.org_id == org_id)
            return frozenset(session.exec(statement).all())

    def lookup_user_id(self, org_id: str | None, field: str, value: str) -> str | None:
        """Find a user id by an alternate identity claim (sub, email or username).

        Usernames and emails are only unique inside an org, so a global lookup
        (``org_id=None``) answers only when exactly one user matches.
        """
        with self._session() as session:
            statement = select(User.id)
            if org_id is not None:
                statement = statement.where(User.org_id == org_id)
            if field == "email":
                statement = statement.where(User.email == value)
            elif field == "username":
                statement = statement.where(User.username == value)
            else:
                statement = statement.where(or_(User.username == value, User.email == value))
            matches = list(session.exec(statement.limit(2)).all())
        if len(matches) != 1:
            if matches:
                logger.info("ambiguous identity lookup", extra={"org_id": org_id, "action": f"lookup:{field}"})
            return None
        return matches[0]

    def dev_login(self, org_id: str, username: str, password: str) -> User:
        with self._session() as session:
            statement = select(User).where(User.org_id == org_id).where(User.username == username)
            user = session.exec(statement).first()
            if user is None:
                raise AuthenticationError("invalid credentials")
            if not user.is_active:
                raise AuthenticationError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthenticationError("invalid credentials")
            return user

    def build_actor(self, claims: Mapping[str, Any]) -> Actor:
        org_scope = resolve_org_scope(claims.get("org_id"))
        actor_id = normalize_id(claims.get("sub"))
        group_ids: frozenset[str] = frozenset()
        if actor_id is not None and org_scope is not None:
            org_id = org_scope.org_id if isinstance(org_scope, SpecificScope) else None
            group_ids = self.group_ids_for_user(org_id, actor_id)
        if org_scope is None:
            logger.warning("token carries an unusable org claim", extra={"actor_id": actor_id})
        return Actor(
            id=actor_id,
            org_scope=org_scope,
            role=parse_role(claims.get("role")),
            group_ids=group_ids,
            claims=dict(claims),
        )
