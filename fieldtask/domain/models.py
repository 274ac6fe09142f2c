from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from fieldtask.domain.geofence import FenceSource
from fieldtask.domain.permissions import Role
from fieldtask.domain.state_machine import TaskStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    org_id: str | None = Field(default=None, index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    entity_type: str | None = None
    entity_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("org_id", "username", name="uq_users_org_username"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    username: str = Field(index=True)
    email: str | None = Field(default=None, index=True)
    password_hash: str
    role: Role = Field(default=Role.USER, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Group(SQLModel, table=True):
    __tablename__ = "groups"
    __table_args__ = (
        UniqueConstraint("org_id", "name", name="uq_groups_org_name"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class GroupMember(SQLModel, table=True):
    __tablename__ = "group_members"
    __table_args__ = (
        Index("ix_group_members_org_user", "org_id", "user_id"),
    )

    org_id: str = Field(index=True)
    group_id: str = Field(foreign_key="groups.id", primary_key=True)
    user_id: str = Field(foreign_key="users.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Project(SQLModel, table=True):
    __tablename__ = "projects"
    __table_args__ = (
        UniqueConstraint("org_id", "name", name="uq_projects_org_name"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    description: str = ""
    geo_fences: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    location_geo_fence: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)
    version: int = Field(default=1)


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_org_status", "org_id", "status"),
        Index("ix_tasks_org_project", "org_id", "project_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str | None = Field(default=None, index=True)
    title: str = Field(index=True)
    description: str = ""
    project_id: str | None = Field(default=None, index=True)
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, index=True)
    tags: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    due_at: datetime | None = Field(default=None, index=True)
    estimated_duration_min: int | None = None
    dependent_task_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    enforce_qr_scan: bool = Field(default=False)
    enforce_location_check: bool = Field(default=False)
    geo_fences: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    location_geo_fence: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    # stored raw so unset and legacy values survive until read
    visibility_mode: str | None = Field(default="org", index=True)
    assigned_user_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    assigned_group_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    actual_duration_log: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    attachments: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    edit_log: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    last_edited_at: datetime | None = None
    last_edited_by: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)
    version: int = Field(default=1)


class AssignmentKind(StrEnum):
    USER = "user"
    GROUP = "group"


class TaskAssignment(SQLModel, table=True):
    """Relational copy of a task's assignee lists, kept in step on every write, for list filtering."""

    __tablename__ = "task_assignments"
    __table_args__ = (
        Index("ix_task_assignments_kind_subject", "kind", "subject_id"),
    )

    task_id: str = Field(foreign_key="tasks.id", primary_key=True)
    kind: str = Field(primary_key=True)
    subject_id: str = Field(primary_key=True)
    org_id: str | None = Field(default=None, index=True)


class Clocking(SQLModel, table=True):
    __tablename__ = "clockings"
    __table_args__ = (
        Index("ix_clockings_project_user_at", "project_id", "user_id", "at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str | None = Field(default=None, index=True)
    user_id: str = Field(index=True)
    project_id: str | None = Field(default=None, index=True)
    type: str = Field(default="present", index=True)
    at: datetime = Field(default_factory=now_utc, index=True)
    notes: str = ""
    location: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    attachments: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    edit_log: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    last_edited_at: datetime | None = None
    last_edited_by: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)
    version: int = Field(default=1)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    org_id: str | None
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class OrganizationCreate(BaseModel):
    name: str


class OrganizationRead(ORMReadModel):
    id: str
    name: str
    created_at: datetime


class UserCreate(BaseModel):
    username: str
    password: str
    email: str | None = None
    role: Role = Role.USER
    is_active: bool = True


class UserRead(ORMReadModel):
    id: str
    org_id: str
    username: str
    email: str | None = None
    role: Role
    is_active: bool
    created_at: datetime


class GroupCreate(BaseModel):
    name: str


class GroupRead(ORMReadModel):
    id: str
    org_id: str
    name: str
    created_at: datetime


class GroupMemberRead(ORMReadModel):
    org_id: str
    group_id: str
    user_id: str
    created_at: datetime


class DevLoginRequest(BaseModel):
    org_id: str
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    org_id: str
    username: str
    password: str
    email: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: Role


class FenceImportRequest(BaseModel):
    fences: list[dict[str, Any]] = PydanticField(default_factory=list)


class FenceSetRead(BaseModel):
    fences: list[dict[str, Any]]
    count: int
    warnings: list[str] = PydanticField(default_factory=list)


class EffectiveFencesRead(BaseModel):
    fences: list[dict[str, Any]]
    source: FenceSource


class ProjectCreate(BaseModel):
    name: str
    description: str = ""
    geo_fences: list[dict[str, Any]] = PydanticField(default_factory=list)
    location_geo_fence: dict[str, Any] | None = None


class ProjectRead(ORMReadModel):
    id: str
    org_id: str
    name: str
    description: str
    geo_fences: list[dict[str, Any]]
    location_geo_fence: dict[str, Any] | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int


class TaskCreate(BaseModel):
    title: str = PydanticField(min_length=1)
    description: str = ""
    org_id: str | None = None
    project_id: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    tags: list[str] = PydanticField(default_factory=list)
    due_at: datetime | None = None
    estimated_duration_min: int | None = PydanticField(default=None, ge=0)
    dependent_task_ids: list[str] = PydanticField(default_factory=list)
    enforce_qr_scan: bool = False
    enforce_location_check: bool = False
    geo_fences: list[dict[str, Any]] = PydanticField(default_factory=list)
    location_geo_fence: dict[str, Any] | None = None
    visibility_mode: str | None = None
    assigned_user_ids: list[str] = PydanticField(default_factory=list)
    assigned_group_ids: list[str] = PydanticField(default_factory=list)
    # legacy single-owner aliases
    assignee: str | None = None
    group_id: str | None = None


class TaskUpdate(BaseModel):
    title: str | None = PydanticField(default=None, min_length=1)
    description: str | None = None
    project_id: str | None = None
    priority: TaskPriority | None = None
    tags: list[str] | None = None
    due_at: datetime | None = None
    estimated_duration_min: int | None = PydanticField(default=None, ge=0)
    dependent_task_ids: list[str] | None = None
    enforce_qr_scan: bool | None = None
    enforce_location_check: bool | None = None
    geo_fences: list[dict[str, Any]] | None = None
    location_geo_fence: dict[str, Any] | None = None
    visibility_mode: str | None = None
    assigned_user_ids: list[str] | None = None
    assigned_group_ids: list[str] | None = None
    assignee: str | None = None
    group_id: str | None = None
    edit_note: str = ""


class TaskRead(ORMReadModel):
    id: str
    org_id: str | None = None
    title: str
    description: str
    project_id: str | None = None
    status: TaskStatus
    priority: TaskPriority
    tags: list[str]
    due_at: datetime | None = None
    estimated_duration_min: int | None = None
    dependent_task_ids: list[str]
    enforce_qr_scan: bool
    enforce_location_check: bool
    geo_fences: list[dict[str, Any]]
    location_geo_fence: dict[str, Any] | None = None
    visibility_mode: str | None = None
    assigned_user_ids: list[str]
    assigned_group_ids: list[str]
    actual_duration_log: list[dict[str, Any]]
    attachments: list[dict[str, Any]]
    edit_log: list[dict[str, Any]]
    last_edited_at: datetime | None = None
    last_edited_by: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int
    actual_duration_minutes: int = 0
    is_blocked: bool = False
    warnings: list[str] = PydanticField(default_factory=list)


class TaskActionRequest(BaseModel):
    action: str
    lat: float | None = None
    lng: float | None = None
    qr_token: str | None = None
    note: str = ""
    milestone_id: str | None = None
    admin_override: bool = False


class TaskLogCreateRequest(BaseModel):
    action: str
    at: datetime | None = None
    note: str = ""


class TaskLogUpdateRequest(BaseModel):
    action: str | None = None
    at: datetime | None = None
    note: str | None = None


class PhotoGeo(BaseModel):
    lat: float
    lng: float
    accuracy: float | None = None


class TaskPhotoRequest(BaseModel):
    filename: str
    url: str
    mime: str | None = None
    size: int | None = PydanticField(default=None, ge=0)
    note: str = ""
    geo: PhotoGeo | None = None


class ClockingLocation(BaseModel):
    lat: float
    lng: float
    acc: float | None = None


class ClockingAttachment(BaseModel):
    filename: str
    url: str
    mime: str | None = None
    size: int | None = None
    uploaded_by: str | None = None
    uploaded_at: datetime = PydanticField(default_factory=now_utc)


class ClockingCreate(BaseModel):
    user_id: str | None = None
    user_ids: list[str] = PydanticField(default_factory=list)
    project_id: str | None = None
    type: str = "present"
    at: datetime | None = None
    notes: str = ""
    location: ClockingLocation | None = None
    attachments: list[ClockingAttachment] = PydanticField(default_factory=list)


class ClockingUpdate(BaseModel):
    user_id: str | None = None
    project_id: str | None = None
    type: str | None = None
    at: datetime | None = None
    notes: str | None = None
    location: ClockingLocation | None = None
    attachments: list[ClockingAttachment] | None = None
    edit_note: str = ""


class ClockingRead(ORMReadModel):
    id: str
    org_id: str | None = None
    user_id: str
    project_id: str | None = None
    type: str
    at: datetime
    notes: str
    location: dict[str, Any] | None = None
    attachments: list[dict[str, Any]]
    edit_log: list[dict[str, Any]]
    last_edited_at: datetime | None = None
    last_edited_by: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int


class ClockingBulkOutcome(BaseModel):
    user_id: str
    ok: bool
    clocking_id: str | None = None
    error: str | None = None


class ClockingBulkRead(BaseModel):
    outcomes: list[ClockingBulkOutcome]
    created_count: int


class AuditEntryRead(BaseModel):
    edited_at: datetime
    edited_by: str
    note: str = ""
    changes: list[dict[str, Any]]
