"""Append-only action log of a task and the state derived from it.

The log is the source of truth: ``status`` and elapsed time are pure functions
of the events, always evaluated in timestamp order regardless of the order in
which events were appended.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField

from fieldtask.domain.errors import NotFoundError, ValidationError
from fieldtask.domain.state_machine import (
    ACTION_ORDER,
    CLOSING_ACTIONS,
    OPENING_ACTIONS,
    TaskAction,
    TaskStatus,
    status_for_action,
)

EDITABLE_EVENT_FIELDS = ("action", "at", "note")


def _now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class ActionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = PydanticField(default_factory=lambda: str(uuid4()))
    action: TaskAction
    at: datetime = PydanticField(default_factory=_now_utc)
    actor_id: str | None = None
    actor_name: str | None = None
    actor_email: str | None = None
    note: str = ""
    milestone_id: str | None = None
    edited_at: datetime | None = None
    edited_by: str | None = None

    @field_validator("at", "edited_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


def parse_action(raw: Any) -> TaskAction:
    if isinstance(raw, TaskAction):
        return raw
    try:
        return TaskAction(str(raw).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"bad action: {raw}") from exc


def load_log(raw: Iterable[Any] | None) -> list[ActionEvent]:
    events: list[ActionEvent] = []
    for item in raw or []:
        if isinstance(item, ActionEvent):
            events.append(item)
            continue
        data = dict(item)
        # rows written before event ids existed get one on first load
        if not data.get("id"):
            data["id"] = str(uuid4())
        events.append(ActionEvent.model_validate(data))
    return events


def dump_log(events: Iterable[ActionEvent]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in events]


def _sort_key(event: ActionEvent) -> tuple[datetime, int, str]:
    return (event.at, ACTION_ORDER[event.action], event.id)


def chronological(events: Iterable[ActionEvent]) -> list[ActionEvent]:
    return sorted(events, key=_sort_key)


def derive_status(events: Iterable[ActionEvent], current: TaskStatus) -> TaskStatus:
    """Status implied by the latest non-photo event; ``current`` when there is none."""
    relevant = [item for item in chronological(events) if item.action != TaskAction.PHOTO]
    if not relevant:
        return current
    derived = status_for_action(relevant[-1].action)
    return derived if derived is not None else current


def compute_elapsed_minutes(events: Iterable[ActionEvent]) -> int:
    """Sum of closed work intervals in whole minutes. A trailing open interval counts for nothing."""
    total_seconds = 0.0
    opened_at: datetime | None = None
    for item in chronological(events):
        if item.action in OPENING_ACTIONS and opened_at is None:
            opened_at = item.at
        elif item.action in CLOSING_ACTIONS and opened_at is not None:
            total_seconds += max(0.0, (item.at - opened_at).total_seconds())
            opened_at = None
    return math.floor(total_seconds / 60 + 0.5)


def append_event(events: Sequence[ActionEvent], event: ActionEvent) -> list[ActionEvent]:
    return [*events, event]


def find_event(events: Sequence[ActionEvent], event_id: str) -> ActionEvent:
    for item in events:
        if item.id == event_id:
            return item
    raise NotFoundError("log row not found")


def edit_event(
    events: Sequence[ActionEvent],
    event_id: str,
    patch: Mapping[str, Any],
    *,
    edited_by: str | None = None,
    edited_at: datetime | None = None,
) -> list[ActionEvent]:
    """Rewrite action/at/note of one event, keeping its position in the log."""
    unknown = set(patch) - set(EDITABLE_EVENT_FIELDS)
    if unknown:
        raise ValidationError(f"log row fields not editable: {', '.join(sorted(unknown))}")
    target = find_event(events, event_id)

    update: dict[str, Any] = {
        "edited_at": ensure_utc(edited_at) if edited_at is not None else _now_utc(),
        "edited_by": edited_by,
    }
    if patch.get("action") is not None:
        update["action"] = parse_action(patch["action"])
    if patch.get("at") is not None:
        at = patch["at"]
        if not isinstance(at, datetime):
            raise ValidationError("log row 'at' must be a datetime")
        update["at"] = ensure_utc(at)
    if patch.get("note") is not None:
        update["note"] = str(patch["note"])

    edited = target.model_copy(update=update)
    return [edited if item.id == event_id else item for item in events]


def delete_event(events: Sequence[ActionEvent], event_id: str) -> list[ActionEvent]:
    _ = find_event(events, event_id)
    return [item for item in events if item.id != event_id]
