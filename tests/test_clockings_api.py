from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from fieldtask import main as app_main
from fieldtask.api.deps import get_identity_resolver
from fieldtask.domain.models import AuditLog, EventRecord
from fieldtask.infra import audit, db, events
from fieldtask.infra.auth import create_access_token
from fieldtask.services import audit_trail_service
from fieldtask.services.audit_trail_service import EditorPolicy


@pytest.fixture()
def clocking_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "clockings_test.db"
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


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, org_id: str, username: str, password: str) -> str:
    response = client.post(
        "/api/identity/dev-login",
        json={"org_id": org_id, "username": username, "password": password},
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def _crew(client: TestClient) -> dict[str, Any]:
    """Org with an admin and three workers; alice and bob share a group, carol is alone."""
    org_id = client.post("/api/identity/organizations", json={"name": "crew-org"}).json()["id"]
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"org_id": org_id, "username": "admin", "password": "admin-pass"},
    )
    assert response.status_code == 201
    admin_token = _login(client, org_id, "admin", "admin-pass")
    admin = _auth_header(admin_token)

    ids: dict[str, str] = {}
    for name in ("alice", "bob", "carol"):
        created = client.post(
            "/api/identity/users",
            json={"username": name, "password": f"{name}-pass", "email": f"{name}@example.com"},
            headers=admin,
        )
        assert created.status_code == 201
        ids[name] = created.json()["id"]

    group_id = client.post("/api/identity/groups", json={"name": "line crew"}, headers=admin).json()["id"]
    for name in ("alice", "bob"):
        added = client.post(f"/api/identity/groups/{group_id}/members/{ids[name]}", headers=admin)
        assert added.status_code == 201

    return {
        "org_id": org_id,
        "ids": ids,
        "admin": admin_token,
        "alice": _login(client, org_id, "alice", "alice-pass"),
        "bob": _login(client, org_id, "bob", "bob-pass"),
        "carol": _login(client, org_id, "carol", "carol-pass"),
    }


def _clock_in(client: TestClient, token: str, **fields: Any) -> dict[str, Any]:
    response = client.post("/api/clockings", json={"type": "in", **fields}, headers=_auth_header(token))
    assert response.status_code == 201, response.text
    return response.json()


def test_bulk_creation_reports_per_subject_outcomes(clocking_client: TestClient) -> None:
    crew = _crew(clocking_client)
    ids = crew["ids"]
    result = _clock_in(
        clocking_client,
        crew["alice"],
        user_ids=[ids["alice"], ids["bob"], ids["carol"], "not-an-id"],
        notes="morning shift",
    )
    assert result["created_count"] == 2
    outcomes = {item["user_id"]: item for item in result["outcomes"]}
    assert outcomes[ids["alice"]]["ok"] is True
    assert outcomes[ids["bob"]]["ok"] is True
    assert outcomes[ids["carol"]] == {
        "user_id": ids["carol"],
        "ok": False,
        "clocking_id": None,
        "error": "user not visible",
    }
    assert outcomes["not-an-id"]["error"] == "invalid user id"

    with Session(db.get_engine(), expire_on_commit=False) as session:
        records = session.exec(select(EventRecord).where(EventRecord.event_type == "clocking.created")).all()
    assert len(records) == 2


def test_single_creation_defaults_to_the_actor(clocking_client: TestClient) -> None:
    crew = _crew(clocking_client)
    result = _clock_in(clocking_client, crew["carol"], location={"lat": 51.5, "lng": -0.1, "acc": 8})
    assert result["created_count"] == 1
    clocking_id = result["outcomes"][0]["clocking_id"]

    fetched = clocking_client.get(f"/api/clockings/{clocking_id}", headers=_auth_header(crew["carol"]))
    assert fetched.status_code == 200
    assert fetched.json()["user_id"] == crew["ids"]["carol"]
    assert fetched.json()["location"] == {"lat": 51.5, "lng": -0.1, "acc": 8}

    bad_type = clocking_client.post("/api/clockings", json={"type": "nap"}, headers=_auth_header(crew["carol"]))
    assert bad_type.status_code == 400


def test_listing_is_restricted_to_accessible_subjects(clocking_client: TestClient) -> None:
    crew = _crew(clocking_client)
    ids = crew["ids"]
    _clock_in(clocking_client, crew["admin"], user_ids=[ids["alice"], ids["bob"], ids["carol"]])

    def listed(token: str, **params: str) -> set[str]:
        response = clocking_client.get("/api/clockings", params=params, headers=_auth_header(token))
        assert response.status_code == 200
        return {item["user_id"] for item in response.json()}

    assert listed(crew["alice"]) == {ids["alice"], ids["bob"]}
    assert listed(crew["carol"]) == {ids["carol"]}
    assert listed(crew["admin"]) == {ids["alice"], ids["bob"], ids["carol"]}
    assert listed(crew["bob"], user_id=ids["alice"]) == {ids["alice"]}

    foreign = clocking_client.get(
        "/api/clockings",
        params={"user_id": ids["alice"]},
        headers=_auth_header(crew["carol"]),
    )
    assert foreign.status_code == 403


def test_update_is_audited_with_whole_value_snapshots(clocking_client: TestClient) -> None:
    crew = _crew(clocking_client)
    ids = crew["ids"]
    created = _clock_in(clocking_client, crew["admin"], user_id=ids["bob"], location={"lat": 1, "lng": 2})
    clocking_id = created["outcomes"][0]["clocking_id"]
    url = f"/api/clockings/{clocking_id}"

    response = clocking_client.put(
        url,
        json={"notes": "left early", "location": {"lat": 1, "lng": 3}, "edit_note": "gps fix"},
        headers=_auth_header(crew["alice"]),
    )
    assert response.status_code == 200
    assert "X-Audit" not in response.headers
    body = response.json()
    assert body["notes"] == "left early"
    assert body["last_edited_by"] == ids["alice"]
    assert body["version"] == 2

    history = clocking_client.get(f"{url}/audit", headers=_auth_header(crew["bob"])).json()
    assert len(history) == 1
    assert history[0]["edited_by"] == ids["alice"]
    assert history[0]["note"] == "gps fix"
    changes = {change["field"]: change for change in history[0]["changes"]}
    assert set(changes) == {"notes", "location"}
    assert changes["location"]["before"] == {"lat": 1.0, "lng": 2.0}
    assert changes["location"]["after"] == {"lat": 1.0, "lng": 3.0}

    noop = clocking_client.put(url, json={"notes": "left early"}, headers=_auth_header(crew["alice"]))
    assert noop.status_code == 200
    assert noop.json()["version"] == 2

    reassigned = clocking_client.put(url, json={"user_id": ids["carol"]}, headers=_auth_header(crew["alice"]))
    assert reassigned.status_code == 403


def test_inaccessible_clockings_are_forbidden(clocking_client: TestClient) -> None:
    crew = _crew(clocking_client)
    created = _clock_in(clocking_client, crew["alice"])
    url = f"/api/clockings/{created['outcomes'][0]['clocking_id']}"
    carol = _auth_header(crew["carol"])

    assert clocking_client.get(url, headers=carol).status_code == 403
    assert clocking_client.put(url, json={"notes": "x"}, headers=carol).status_code == 403
    assert clocking_client.delete(url, headers=carol).status_code == 403

    assert clocking_client.delete(url, headers=_auth_header(crew["bob"])).status_code == 204
    assert clocking_client.get(url, headers=_auth_header(crew["alice"])).status_code == 404


def test_update_without_editor_follows_policy(clocking_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    crew = _crew(clocking_client)
    created = _clock_in(clocking_client, crew["admin"], user_id=crew["ids"]["alice"])
    url = f"/api/clockings/{created['outcomes'][0]['clocking_id']}"
    ghost = _auth_header(create_access_token(user_id="null", org_id=crew["org_id"], role="admin"))

    assert clocking_client.put(url, json={"notes": "edited"}, headers=ghost).status_code == 400

    monkeypatch.setattr(audit_trail_service, "AUDIT_EDITOR_POLICY", EditorPolicy.FAIL_OPEN)
    response = clocking_client.put(url, json={"notes": "edited"}, headers=ghost)
    assert response.status_code == 200
    assert response.headers["X-Audit"] == "skipped-no-editor"
    assert response.json()["edit_log"] == []

    with Session(db.get_engine(), expire_on_commit=False) as session:
        rows = session.exec(
            select(AuditLog).where(AuditLog.action == "clocking.update").where(AuditLog.status_code == 200)
        ).all()
    assert len(rows) == 1
    assert rows[0].detail["result"]["entity_audit"] == "skipped-no-editor"
    assert rows[0].resource.startswith("clocking:")


def test_editor_resolved_by_email_when_subject_is_not_an_id(clocking_client: TestClient) -> None:
    crew = _crew(clocking_client)
    created = _clock_in(clocking_client, crew["admin"], user_id=crew["ids"]["alice"])
    url = f"/api/clockings/{created['outcomes'][0]['clocking_id']}"
    token = create_access_token(
        user_id="legacy-subject",
        org_id=crew["org_id"],
        role="admin",
        email="carol@example.com",
    )

    response = clocking_client.put(url, json={"type": "out"}, headers=_auth_header(token))
    assert response.status_code == 200
    assert response.json()["last_edited_by"] == crew["ids"]["carol"]
