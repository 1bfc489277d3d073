from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class IllegalTransitionError(RuntimeError):
    """Raised when a state machine is asked to take an edge it does not have."""

    def __init__(self, entity: str, from_state: str, to_state: str) -> None:
        super().__init__(f"Illegal {entity} transition: {from_state} -> {to_state}")
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class AgentRole(StrEnum):
    PLANNER = "planner"
    CODER = "coder"
    TESTER = "tester"
    CURATOR = "curator"
    REVIEWER = "reviewer"


class AgentState(StrEnum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ProjectStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


# Audit corrections move tasks to completed or back to pending from most states.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {
            TaskStatus.IN_PROGRESS,
            TaskStatus.BLOCKED,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.SKIPPED,
        }
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.PENDING, TaskStatus.BLOCKED, TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.BLOCKED: frozenset(
        {
            TaskStatus.PENDING,
            TaskStatus.IN_PROGRESS,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.SKIPPED,
        }
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.COMPLETED, TaskStatus.SKIPPED}),
    TaskStatus.SKIPPED: frozenset({TaskStatus.PENDING}),
}

AGENT_TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.IDLE: frozenset({AgentState.ACTIVE}),
    AgentState.ACTIVE: frozenset({AgentState.COMPLETED, AgentState.FAILED}),
    AgentState.COMPLETED: frozenset({AgentState.IDLE}),
    AgentState.FAILED: frozenset({AgentState.IDLE}),
}

PROJECT_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.ACTIVE: frozenset(
        {ProjectStatus.PAUSED, ProjectStatus.COMPLETED, ProjectStatus.FAILED}
    ),
    ProjectStatus.PAUSED: frozenset({ProjectStatus.ACTIVE, ProjectStatus.FAILED}),
    ProjectStatus.FAILED: frozenset({ProjectStatus.ACTIVE}),
    ProjectStatus.COMPLETED: frozenset(),
}


def require_transition(
    entity: str,
    table: Mapping[StrEnum, frozenset],
    current: StrEnum,
    target: StrEnum,
    *,
    allow_same: bool = False,
) -> None:
    if allow_same and current == target:
        return
    if target not in table.get(current, frozenset()):
        raise IllegalTransitionError(entity, str(current), str(target))
