from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"


class TaskAction(StrEnum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    PHOTO = "photo"


STATUS_BY_ACTION: dict[TaskAction, TaskStatus] = {
    TaskAction.START: TaskStatus.IN_PROGRESS,
    TaskAction.RESUME: TaskStatus.IN_PROGRESS,
    TaskAction.PAUSE: TaskStatus.PAUSED,
    TaskAction.COMPLETE: TaskStatus.COMPLETED,
}

# start/resume open a work interval, pause/complete close it
OPENING_ACTIONS: frozenset[TaskAction] = frozenset({TaskAction.START, TaskAction.RESUME})
CLOSING_ACTIONS: frozenset[TaskAction] = frozenset({TaskAction.PAUSE, TaskAction.COMPLETE})

GATED_ACTIONS: frozenset[TaskAction] = OPENING_ACTIONS
OPERATOR_ACTIONS: frozenset[TaskAction] = frozenset(STATUS_BY_ACTION)

# tie-break for events sharing a timestamp
ACTION_ORDER: dict[TaskAction, int] = {
    TaskAction.START: 0,
    TaskAction.RESUME: 1,
    TaskAction.PHOTO: 2,
    TaskAction.PAUSE: 3,
    TaskAction.COMPLETE: 4,
}


def status_for_action(action: TaskAction) -> TaskStatus | None:
    return STATUS_BY_ACTION.get(action)


def is_gated(action: TaskAction) -> bool:
    return action in GATED_ACTIONS
