from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event, update
from sqlmodel import Session, SQLModel, create_engine, select

from fieldtask import main as app_main
from fieldtask.api.deps import get_identity_resolver
from fieldtask.domain.models import AuditLog, Clocking, EventRecord, Task
from fieldtask.infra import audit, db, events
from fieldtask.infra.db import OCC_MAX_RETRIES
from fieldtask.services import clocking_service, task_service


@pytest.fixture()
def occ_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "occ_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    get_identity_resolver().clear()
    client = TestClient(app_main.app)
    yield client
    client.close()


def _admin_token(client: TestClient) -> str:
    org_id = client.post("/api/identity/organizations", json={"name": "occ-org"}).json()["id"]
    bootstrap = client.post(
        "/api/identity/bootstrap-admin",
        json={"org_id": org_id, "username": "admin", "password": "admin-pass"},
    )
    assert bootstrap.status_code == 201
    login = client.post(
        "/api/identity/dev-login",
        json={"org_id": org_id, "username": "admin", "password": "admin-pass"},
    )
    assert login.status_code == 200
    return login.json()["access_token"]


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _racing_writer(
    monkeypatch: pytest.MonkeyPatch,
    service_module: Any,
    *,
    races: int,
) -> list[int]:
    """Commit a competing version bump right before each of the first ``races`` compare-and-swaps."""
    real_swap: Callable[..., bool] = service_module.compare_and_swap
    seen_versions: list[int] = []

    def swap(session: Session, model: Any, row_id: str, expected_version: int, values: dict[str, Any]) -> bool:
        seen_versions.append(expected_version)
        if len(seen_versions) <= races:
            with Session(db.get_engine()) as other:
                other.execute(update(model).where(model.id == row_id).values(version=model.version + 1))
                other.commit()
        return real_swap(session, model, row_id, expected_version, values)

    monkeypatch.setattr(service_module, "compare_and_swap", swap)
    return seen_versions


def _stored_version(model: Any, row_id: str) -> int:
    with Session(db.get_engine()) as session:
        return session.exec(select(model.version).where(model.id == row_id)).one()


def test_task_update_retries_after_a_stale_version(occ_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    admin = _headers(_admin_token(occ_client))
    task = occ_client.post("/api/tasks", json={"title": "inspect pylon"}, headers=admin).json()
    seen = _racing_writer(monkeypatch, task_service, races=1)

    response = occ_client.put(f"/api/tasks/{task['id']}", json={"title": "inspect pylon 9"}, headers=admin)
    assert response.status_code == 200
    assert response.json()["title"] == "inspect pylon 9"
    assert seen == [task["version"], task["version"] + 1]
    assert response.json()["version"] == task["version"] + 2
    assert _stored_version(Task, task["id"]) == task["version"] + 2


def test_task_action_retry_does_not_duplicate_log_rows(
    occ_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    admin = _headers(_admin_token(occ_client))
    task = occ_client.post("/api/tasks", json={"title": "inspect pylon"}, headers=admin).json()
    _racing_writer(monkeypatch, task_service, races=1)

    response = occ_client.post(f"/api/tasks/{task['id']}/action", json={"action": "start"}, headers=admin)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "in-progress"
    assert [row["action"] for row in body["actual_duration_log"]] == ["start"]


def test_task_update_gives_up_with_conflict(occ_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    admin = _headers(_admin_token(occ_client))
    task = occ_client.post("/api/tasks", json={"title": "inspect pylon"}, headers=admin).json()
    seen = _racing_writer(monkeypatch, task_service, races=OCC_MAX_RETRIES)

    response = occ_client.put(f"/api/tasks/{task['id']}", json={"title": "never lands"}, headers=admin)
    assert response.status_code == 409
    assert len(seen) == OCC_MAX_RETRIES

    fetched = occ_client.get(f"/api/tasks/{task['id']}", headers=admin).json()
    assert fetched["title"] == "inspect pylon"
    assert fetched["edit_log"] == []
    with Session(db.get_engine()) as session:
        updated_events = session.exec(select(EventRecord).where(EventRecord.event_type == "task.updated")).all()
        audit_rows = session.exec(select(AuditLog).where(AuditLog.action == "task.update")).all()
    assert updated_events == []
    assert [row.status_code for row in audit_rows] == [409]
    assert audit_rows[0].detail["result"]["outcome"] == "conflict"


def test_clocking_update_retries_then_gives_up(occ_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    admin = _headers(_admin_token(occ_client))
    created = occ_client.post("/api/clockings", json={"type": "in"}, headers=admin)
    assert created.status_code == 201
    clocking_id = created.json()["outcomes"][0]["clocking_id"]
    url = f"/api/clockings/{clocking_id}"
    original = _stored_version(Clocking, clocking_id)

    _racing_writer(monkeypatch, clocking_service, races=1)
    retried = occ_client.put(url, json={"notes": "late start"}, headers=admin)
    assert retried.status_code == 200
    assert retried.json()["notes"] == "late start"
    assert retried.json()["version"] == original + 2

    _racing_writer(monkeypatch, clocking_service, races=OCC_MAX_RETRIES)
    conflicted = occ_client.put(url, json={"notes": "lost"}, headers=admin)
    assert conflicted.status_code == 409
    assert occ_client.get(url, headers=admin).json()["notes"] == "late start"
