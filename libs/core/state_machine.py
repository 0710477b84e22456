from __future__ import annotations

from typing import Dict, Set

from .models import TaskState

TASK_TRANSITIONS: Dict[TaskState, Set[TaskState]] = {
    TaskState.queued: {TaskState.running, TaskState.failed},
    TaskState.running: {TaskState.succeeded, TaskState.retrying, TaskState.failed},
    TaskState.retrying: {TaskState.running, TaskState.queued, TaskState.failed},
    TaskState.succeeded: set(),
    TaskState.failed: set(),
}

TERMINAL_STATES: Set[TaskState] = {TaskState.succeeded, TaskState.failed}


def validate_task_transition(current: TaskState, new: TaskState) -> bool:
    return new in TASK_TRANSITIONS.get(current, set())


def is_terminal(state: TaskState) -> bool:
    return state in TERMINAL_STATES
