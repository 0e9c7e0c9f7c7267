from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"


# `in_progress -> in_progress` is the advance/route edge: only valid when the
# current step changes (enforced by the task store).
ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PLANNED: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.DONE,
        TaskStatus.BLOCKED,
        TaskStatus.FAILED,
    },
    TaskStatus.BLOCKED: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.DONE: set(),
    TaskStatus.FAILED: set(),
}

TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.DONE, TaskStatus.FAILED})


class InvalidTransition(ValueError):
    pass


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def transition(*, current: TaskStatus, to: TaskStatus) -> TaskStatus:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise InvalidTransition(f"Illegal transition: {current.value} -> {to.value}")
    return to
