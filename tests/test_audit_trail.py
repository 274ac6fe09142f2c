from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from fieldtask.domain.errors import ValidationError
from fieldtask.services.audit_trail_service import (
    AuditTrail,
    Change,
    EditorPolicy,
    canonical_json,
    parse_editor_policy,
)

FIELDS = ("title", "tags", "location", "at")


def test_identical_snapshots_produce_no_changes() -> None:
    trail = AuditTrail(EditorPolicy.FAIL_CLOSED)
    before = {"title": "a", "tags": ["x"], "location": {"lat": 1, "lng": 2}, "at": None}
    after = {"title": "a", "tags": ["x"], "location": {"lng": 2, "lat": 1}, "at": None}
    assert trail.diff(before, after, FIELDS) == []


def test_nested_values_are_compared_whole() -> None:
    trail = AuditTrail(EditorPolicy.FAIL_CLOSED)
    before = {"title": "a", "location": {"lat": 1, "lng": 2}}
    after = {"title": "a", "location": {"lat": 1, "lng": 3}}
    changes = trail.diff(before, after, FIELDS)
    assert changes == [Change(field="location", before={"lat": 1, "lng": 2}, after={"lat": 1, "lng": 3})]


def test_datetimes_compare_by_instant() -> None:
    trail = AuditTrail(EditorPolicy.FAIL_CLOSED)
    utc = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    same_instant = utc.astimezone(timezone(timedelta(hours=2)))
    assert trail.diff({"at": utc}, {"at": same_instant}, FIELDS) == []
    assert trail.diff({"at": utc.replace(tzinfo=None)}, {"at": utc}, FIELDS) == []
    assert trail.diff({"at": utc}, {"at": utc + timedelta(minutes=1)}, FIELDS)


def test_canonical_json_sorts_keys() -> None:
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'


def test_record_edit_is_noop_without_changes() -> None:
    trail = AuditTrail(EditorPolicy.FAIL_CLOSED)
    existing = [{"edited_by": "x", "changes": []}]
    outcome = trail.record_edit(existing, [], None)
    assert outcome.edit_log == existing
    assert outcome.entry is None
    assert outcome.audit_skipped is False


def test_record_edit_appends_one_entry() -> None:
    trail = AuditTrail(EditorPolicy.FAIL_CLOSED)
    changes = [Change(field="title", before="a", after="b")]
    outcome = trail.record_edit([], changes, "editor-1", "rename")
    assert len(outcome.edit_log) == 1
    entry = outcome.edit_log[0]
    assert entry["edited_by"] == "editor-1"
    assert entry["note"] == "rename"
    assert entry["changes"] == [{"field": "title", "before": "a", "after": "b"}]

    second = trail.record_edit(outcome.edit_log, changes, "editor-2")
    assert [item["edited_by"] for item in second.edit_log] == ["editor-1", "editor-2"]


def test_missing_editor_fails_closed() -> None:
    trail = AuditTrail(EditorPolicy.FAIL_CLOSED)
    with pytest.raises(ValidationError):
        trail.record_edit([], [Change(field="title", before="a", after="b")], None)


def test_missing_editor_fails_open_when_configured() -> None:
    trail = AuditTrail(EditorPolicy.FAIL_OPEN)
    outcome = trail.record_edit([], [Change(field="title", before="a", after="b")], None)
    assert outcome.audit_skipped is True
    assert outcome.edit_log == []
    assert outcome.entry is None


def test_policy_parsing_defaults_to_fail_closed() -> None:
    assert parse_editor_policy("fail_open") == EditorPolicy.FAIL_OPEN
    assert parse_editor_policy(None) == EditorPolicy.FAIL_CLOSED
    assert parse_editor_policy("whatever") == EditorPolicy.FAIL_CLOSED
