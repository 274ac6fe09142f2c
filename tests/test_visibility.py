from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from fieldtask.domain.actor import Actor, GlobalScope, SpecificScope
from fieldtask.domain.errors import AuthorizationError
from fieldtask.domain.models import AssignmentKind, Group, GroupMember, Organization, Task, TaskAssignment, User
from fieldtask.domain.permissions import Role, VisibilityMode
from fieldtask.infra import db
from fieldtask.services.visibility_service import VisibilityEngine, org_scoped

ORG = str(uuid4())
G1 = str(uuid4())
G2 = str(uuid4())
ALICE = str(uuid4())
BOB = str(uuid4())


def _actor(role: Role = Role.USER, *, actor_id: str = ALICE, groups: tuple[str, ...] = ()) -> Actor:
    return Actor(id=actor_id, org_scope=SpecificScope(org_id=ORG), role=role, group_ids=frozenset(groups))


def _entity(mode: str | None, users: list[str] | None = None, groups: list[str] | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        visibility_mode=mode,
        assigned_user_ids=users or [],
        assigned_group_ids=groups or [],
    )


@pytest.fixture()
def visibility_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'visibility_test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


def test_group_scenario() -> None:
    engine = VisibilityEngine()
    actor = _actor(groups=(G1,))
    assert engine.is_visible(actor, _entity("groups", groups=[G1])) is True
    assert engine.is_visible(actor, _entity("groups", groups=[G2])) is False


def test_clauses_are_or_composed() -> None:
    engine = VisibilityEngine()
    actor = _actor(groups=(G1,))
    combined = "assignees+groups"
    assert engine.is_visible(actor, _entity(combined, users=[ALICE], groups=[G2])) is True
    assert engine.is_visible(actor, _entity(combined, users=[BOB], groups=[G1])) is True
    assert engine.is_visible(actor, _entity(combined, users=[BOB], groups=[G2])) is False


def test_mode_selects_which_clauses_apply() -> None:
    engine = VisibilityEngine()
    actor = _actor(groups=(G1,))
    assert engine.is_visible(actor, _entity("assignees", users=[BOB], groups=[G1])) is False
    assert engine.is_visible(actor, _entity("groups", users=[ALICE], groups=[G2])) is False
    assert engine.is_visible(actor, _entity("org")) is True
    assert engine.is_visible(actor, _entity(None)) is True
    assert engine.is_visible(actor, _entity("")) is True


def test_legacy_restricted_mode_reads_as_assignees_and_groups() -> None:
    engine = VisibilityEngine()
    assert engine.is_visible(_actor(), _entity("restricted", users=[ALICE])) is True
    assert engine.is_visible(_actor(groups=(G1,)), _entity("restricted", groups=[G1])) is True
    assert engine.is_visible(_actor(), _entity("restricted")) is False


def test_privileged_actors_bypass_every_mode() -> None:
    engine = VisibilityEngine()
    for role in (Role.ADMIN, Role.SUPERADMIN):
        actor = _actor(role, actor_id=BOB)
        assert engine.is_visible(actor, _entity("admins")) is True
        assert engine.is_visible(actor, _entity("assignees", users=[ALICE])) is True
        assert engine.is_visible(actor, _entity("bogus-mode")) is True


def test_admins_and_unknown_modes_hide_from_non_privileged() -> None:
    engine = VisibilityEngine()
    for role in (Role.USER, Role.MANAGER):
        actor = _actor(role, groups=(G1,))
        assert engine.is_visible(actor, _entity("admins", users=[ALICE], groups=[G1])) is False
        assert engine.is_visible(actor, _entity("bogus-mode", users=[ALICE])) is False


def test_ids_are_compared_in_canonical_form() -> None:
    engine = VisibilityEngine()
    actor = _actor(actor_id=ALICE.upper())
    assert engine.is_visible(actor, _entity("assignees", users=[f"  {ALICE.upper()} "])) is True
    assert engine.is_visible(_actor(), _entity("assignees", users=["null", "undefined", "", None])) is False


def test_only_privileged_may_set_admins_mode() -> None:
    engine = VisibilityEngine()
    assert engine.can_mutate_visibility(_actor(Role.MANAGER), VisibilityMode.GROUPS) is True
    assert engine.can_mutate_visibility(_actor(Role.ADMIN), VisibilityMode.ADMINS) is True
    with pytest.raises(AuthorizationError):
        engine.ensure_can_mutate_visibility(_actor(Role.MANAGER), VisibilityMode.ADMINS)


def test_accessible_subjects_include_group_members(visibility_engine: Engine) -> None:
    carol = str(uuid4())
    with Session(visibility_engine) as session:
        session.add(Organization(id=ORG, name="org-visibility"))
        session.add(Group(id=G1, org_id=ORG, name="crew"))
        for user_id, name in ((ALICE, "alice"), (BOB, "bob"), (carol, "carol")):
            session.add(User(id=user_id, org_id=ORG, username=name, password_hash="x"))
        session.commit()
        session.add(GroupMember(org_id=ORG, group_id=G1, user_id=ALICE))
        session.add(GroupMember(org_id=ORG, group_id=G1, user_id=BOB))
        session.commit()

    engine = VisibilityEngine()
    scope = engine.accessible_subject_ids(_actor(groups=(G1,)))
    assert scope.unrestricted is False
    assert scope.subject_ids == frozenset({ALICE, BOB})
    assert scope.contains(BOB.upper()) is True
    assert scope.contains(carol) is False

    loner = engine.accessible_subject_ids(_actor(actor_id=carol))
    assert loner.subject_ids == frozenset({carol})

    admin_scope = engine.accessible_subject_ids(_actor(Role.ADMIN))
    assert admin_scope.unrestricted is True
    assert admin_scope.contains(carol) is True


def test_org_scoped_statements(visibility_engine: Engine) -> None:
    other_org = str(uuid4())
    with Session(visibility_engine) as session:
        session.add(Task(org_id=ORG, title="ours"))
        session.add(Task(org_id=other_org, title="theirs"))
        session.commit()

    def titles(actor: Actor) -> set[str]:
        with Session(visibility_engine) as session:
            return {row.title for row in session.exec(org_scoped(select(Task), Task, actor)).all()}

    assert titles(_actor()) == {"ours"}
    assert titles(Actor(id=ALICE, org_scope=GlobalScope(), role=Role.SUPERADMIN)) == {"ours", "theirs"}
    assert titles(Actor(id=ALICE, org_scope=None, role=Role.ADMIN)) == set()


def test_sql_clause_agrees_with_in_memory_matching(visibility_engine: Engine) -> None:
    carol = str(uuid4())
    rows = [
        ("open", None, [], []),
        ("blank", "", [], []),
        ("org", "ORG", [], []),
        ("alice only", "assignees", [ALICE], []),
        ("bob only", "assignees", [BOB], []),
        ("g1 crew", " Groups ", [], [G1]),
        ("g2 crew", "groups", [], [G2]),
        ("legacy", "restricted", [BOB], [G1]),
        ("combined", "assignees+groups", [ALICE], [G2]),
        ("locked", "admins", [ALICE], [G1]),
        ("garbled", "bogus-mode", [ALICE], [G1]),
    ]
    with Session(visibility_engine) as session:
        for title, mode, users, groups in rows:
            task = Task(
                org_id=ORG,
                title=title,
                visibility_mode=mode,
                assigned_user_ids=users,
                assigned_group_ids=groups,
            )
            session.add(task)
            session.flush()
            for user_id in users:
                session.add(TaskAssignment(task_id=task.id, kind=AssignmentKind.USER.value, subject_id=user_id, org_id=ORG))
            for group_id in groups:
                session.add(TaskAssignment(task_id=task.id, kind=AssignmentKind.GROUP.value, subject_id=group_id, org_id=ORG))
        session.commit()

    engine = VisibilityEngine()
    actors = [
        _actor(),
        _actor(actor_id=BOB),
        _actor(actor_id=carol, groups=(G1,)),
        _actor(actor_id=carol, groups=(G1, G2)),
        _actor(Role.ADMIN),
    ]
    with Session(visibility_engine) as session:
        tasks = session.exec(select(Task)).all()
        for actor in actors:
            visibility = engine.visibility_filter(actor)
            queried = {task.title for task in session.exec(select(Task).where(visibility.clause())).all()}
            assert queried == {task.title for task in tasks if visibility.matches(task)}

        alice_view = engine.visibility_filter(_actor())
        queried = {task.title for task in session.exec(select(Task).where(alice_view.clause())).all()}
    assert queried == {"open", "blank", "org", "alice only", "combined"}
