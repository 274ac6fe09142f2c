from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any

from pydantic import BaseModel
from pydantic import Field as PydanticField

from fieldtask.domain.errors import ValidationError
from fieldtask.domain.lifecycle import ensure_utc
from fieldtask.domain.models import now_utc


class EditorPolicy(StrEnum):
    FAIL_CLOSED = "FAIL_CLOSED"
    FAIL_OPEN = "FAIL_OPEN"


def parse_editor_policy(raw: str | None) -> EditorPolicy:
    try:
        return EditorPolicy((raw or "").strip().upper())
    except ValueError:
        return EditorPolicy.FAIL_CLOSED


AUDIT_EDITOR_POLICY = parse_editor_policy(os.getenv("AUDIT_EDITOR_POLICY", EditorPolicy.FAIL_CLOSED))

AUDIT_SKIPPED_HEADER = ("X-Audit", "skipped-no-editor")

logger = logging.getLogger(__name__)


class Change(BaseModel):
    field: str
    before: Any = None
    after: Any = None


class AuditEntry(BaseModel):
    edited_at: datetime = PydanticField(default_factory=now_utc)
    edited_by: str
    note: str = ""
    changes: list[Change]


@dataclass(frozen=True)
class AuditOutcome:
    edit_log: list[dict[str, Any]] = field(default_factory=list)
    entry: AuditEntry | None = None
    audit_skipped: bool = False


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value, key=str)
    raise TypeError(f"not serializable: {type(value).__name__}")


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_json_default)


def _snapshot(value: Any) -> Any:
    return json.loads(canonical_json(value))


class AuditTrail:
    def __init__(self, policy: EditorPolicy | None = None) -> None:
        self.policy = policy or AUDIT_EDITOR_POLICY

    def diff(
        self,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        tracked_fields: Iterable[str],
    ) -> list[Change]:
        """Whole-value comparison of each tracked field by canonical JSON."""
        changes: list[Change] = []
        for name in tracked_fields:
            old = before.get(name)
            new = after.get(name)
            if canonical_json(old) == canonical_json(new):
                continue
            changes.append(Change(field=name, before=_snapshot(old), after=_snapshot(new)))
        return changes

    def record_edit(
        self,
        edit_log: Sequence[Mapping[str, Any]],
        changes: Sequence[Change],
        editor_id: str | None,
        note: str = "",
        *,
        edited_at: datetime | None = None,
    ) -> AuditOutcome:
        current = [dict(item) for item in edit_log]
        if not changes:
            return AuditOutcome(edit_log=current)
        if editor_id is None:
            if self.policy == EditorPolicy.FAIL_CLOSED:
                raise ValidationError("editor identity could not be resolved for an audited edit")
            logger.warning(
                "audited edit persisted without an editor",
                extra={"action": "audit:skipped", "reason_code": "NO_EDITOR"},
            )
            return AuditOutcome(edit_log=current, audit_skipped=True)

        entry = AuditEntry(
            edited_at=edited_at or now_utc(),
            edited_by=editor_id,
            note=note,
            changes=list(changes),
        )
        return AuditOutcome(edit_log=[*current, entry.model_dump(mode="json")], entry=entry)
