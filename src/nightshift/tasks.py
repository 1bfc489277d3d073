from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from nightshift.state.store import StateStore
from nightshift.states import TASK_TRANSITIONS, TaskStatus, require_transition

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "dependencies",
    "assigned_role",
    "completion_confidence",
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskGraphError(ValueError):
    """Raised when a task mutation would corrupt the graph."""


class UnknownTaskError(TaskGraphError):
    """Raised when a task identifier is not part of the graph."""


class DependencyCycleError(TaskGraphError):
    """Raised when a dependency edge would close a cycle."""


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 3
    dependencies: list[str] = field(default_factory=list)
    assigned_role: str | None = None
    completion_confidence: float = 0.0
    verification_notes: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    last_verified_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": str(self.status),
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "assigned_role": self.assigned_role,
            "completion_confidence": self.completion_confidence,
            "verification_notes": list(self.verification_notes),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_verified_at": self.last_verified_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            description=str(payload.get("description", "")),
            status=TaskStatus(payload.get("status", TaskStatus.PENDING)),
            priority=int(payload.get("priority", 3)),
            dependencies=[str(item) for item in payload.get("dependencies", [])],
            assigned_role=payload.get("assigned_role"),
            completion_confidence=float(payload.get("completion_confidence", 0.0)),
            verification_notes=[str(item) for item in payload.get("verification_notes", [])],
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            last_verified_at=payload.get("last_verified_at"),
        )


@dataclass(slots=True)
class AuditVerdict:
    complete: bool
    confidence: float
    evidence: str = ""


@dataclass(slots=True)
class AuditCorrection:
    task_id: str
    from_status: str
    to_status: str
    note: str


@dataclass(slots=True)
class AuditReport:
    audited: int
    corrections: list[AuditCorrection]
    last_audited_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "audited": self.audited,
            "corrections": [
                {
                    "task_id": item.task_id,
                    "from_status": item.from_status,
                    "to_status": item.to_status,
                    "note": item.note,
                }
                for item in self.corrections
            ],
            "last_audited_at": self.last_audited_at,
        }


def find_cycle(edges: dict[str, list[str]]) -> list[str] | None:
    """Return one dependency cycle as a list of ids, or None when acyclic."""
    visiting: set[str] = set()
    done: set[str] = set()
    stack: list[str] = []

    def _visit(node: str) -> list[str] | None:
        visiting.add(node)
        stack.append(node)
        for dep in edges.get(node, []):
            if dep in visiting:
                return stack[stack.index(dep):] + [dep]
            if dep not in done:
                cycle = _visit(dep)
                if cycle:
                    return cycle
        visiting.discard(node)
        done.add(node)
        stack.pop()
        return None

    for node in edges:
        if node not in done:
            cycle = _visit(node)
            if cycle:
                return cycle
    return None


class TaskGraph:
    """Durable per-project task list with dependency edges.

    Every write bumps the store revision, which doubles as the list version.
    """

    NAMESPACE = "tasks"

    def __init__(self, store: StateStore) -> None:
        self.store = store

    @property
    def version(self) -> int:
        return self.store.revision(self.NAMESPACE)

    def _load(self, payload: Any) -> list[Task]:
        if not isinstance(payload, dict):
            return []
        return [Task.from_dict(item) for item in payload.get("tasks", []) if isinstance(item, dict)]

    def _mutate(self, mutation: Callable[[list[Task], dict[str, Any]], Any]) -> Any:
        result: dict[str, Any] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {}
            tasks = self._load(data)
            result["value"] = mutation(tasks, data)
            data["tasks"] = [task.to_dict() for task in tasks]
            return data

        self.store.update_json(self.NAMESPACE, _updater, default={"tasks": []})
        return result.get("value")

    def list_tasks(self) -> list[Task]:
        return self._load(self.store.get_json(self.NAMESPACE, default={"tasks": []}))

    def get_task(self, task_id: str) -> Task:
        for task in self.list_tasks():
            if task.id == task_id:
                return task
        raise UnknownTaskError(f"Unknown task: {task_id}")

    @property
    def last_audited_at(self) -> str | None:
        payload = self.store.get_json(self.NAMESPACE, default={})
        return payload.get("last_audited_at") if isinstance(payload, dict) else None

    @staticmethod
    def _check_dependencies(tasks: list[Task], task_id: str, dependencies: list[str]) -> None:
        known = {task.id for task in tasks} | {task_id}
        unknown = [dep for dep in dependencies if dep not in known]
        if unknown:
            raise UnknownTaskError(f"Unknown dependencies for {task_id}: {', '.join(unknown)}")
        edges = {task.id: list(task.dependencies) for task in tasks}
        edges[task_id] = list(dependencies)
        cycle = find_cycle(edges)
        if cycle:
            raise DependencyCycleError("Dependency cycle: " + " -> ".join(cycle))

    def add_task(
        self,
        title: str,
        *,
        description: str = "",
        priority: int = 3,
        dependencies: list[str] | None = None,
        assigned_role: str | None = None,
        task_id: str | None = None,
    ) -> Task:
        new_task = Task(
            id=task_id or f"task-{uuid4().hex[:8]}",
            title=title,
            description=description,
            priority=priority,
            dependencies=list(dict.fromkeys(dependencies or [])),
            assigned_role=assigned_role,
        )

        def _add(tasks: list[Task], _: dict[str, Any]) -> Task:
            if any(task.id == new_task.id for task in tasks):
                raise TaskGraphError(f"Task already exists: {new_task.id}")
            self._check_dependencies(tasks, new_task.id, new_task.dependencies)
            tasks.append(new_task)
            return new_task

        task = self._mutate(_add)
        logger.info("Added task %s: %s", task.id, task.title)
        return task

    def update_task(self, task_id: str, **changes: Any) -> Task:
        unknown_fields = set(changes) - UPDATABLE_FIELDS
        if unknown_fields:
            raise TaskGraphError(f"Cannot update fields: {', '.join(sorted(unknown_fields))}")

        def _update(tasks: list[Task], _: dict[str, Any]) -> Task:
            task = next((item for item in tasks if item.id == task_id), None)
            if task is None:
                raise UnknownTaskError(f"Unknown task: {task_id}")
            if "dependencies" in changes:
                dependencies = list(dict.fromkeys(changes["dependencies"] or []))
                others = [item for item in tasks if item.id != task_id]
                self._check_dependencies(others, task_id, dependencies)
                task.dependencies = dependencies
            if "status" in changes:
                self._apply_status(task, TaskStatus(changes["status"]))
            for key in ("title", "description", "assigned_role"):
                if key in changes:
                    setattr(task, key, changes[key])
            if "priority" in changes:
                task.priority = int(changes["priority"])
            if "completion_confidence" in changes:
                confidence = float(changes["completion_confidence"])
                task.completion_confidence = min(1.0, max(0.0, confidence))
            return task

        return self._mutate(_update)

    @staticmethod
    def _apply_status(task: Task, target: TaskStatus) -> None:
        require_transition("task", TASK_TRANSITIONS, task.status, target, allow_same=True)
        if target == task.status:
            return
        now = _utcnow_iso()
        if target == TaskStatus.IN_PROGRESS:
            task.started_at = now
        if target == TaskStatus.COMPLETED:
            task.completed_at = now
        elif task.status == TaskStatus.COMPLETED:
            task.completed_at = None
        task.status = target

    def remove_task(self, task_id: str) -> None:
        def _remove(tasks: list[Task], _: dict[str, Any]) -> None:
            if not any(task.id == task_id for task in tasks):
                raise UnknownTaskError(f"Unknown task: {task_id}")
            dependents = [task.id for task in tasks if task_id in task.dependencies]
            if dependents:
                raise TaskGraphError(
                    f"Task {task_id} is required by: {', '.join(dependents)}"
                )
            tasks[:] = [task for task in tasks if task.id != task_id]

        self._mutate(_remove)

    def get_executable_tasks(self) -> list[Task]:
        tasks = self.list_tasks()
        completed = {task.id for task in tasks if task.status == TaskStatus.COMPLETED}
        ready = [
            task
            for task in tasks
            if task.status == TaskStatus.PENDING and set(task.dependencies) <= completed
        ]
        order = {task.id: index for index, task in enumerate(tasks)}
        return sorted(ready, key=lambda task: (task.priority, order[task.id]))

    def audit(self, verify: Callable[[Task], AuditVerdict]) -> AuditReport:
        """Reconcile recorded statuses with external verdicts."""
        tasks = [task for task in self.list_tasks() if task.status != TaskStatus.SKIPPED]
        verdicts = {task.id: verify(task) for task in tasks}
        now = _utcnow_iso()
        corrections: list[AuditCorrection] = []

        def _apply(all_tasks: list[Task], data: dict[str, Any]) -> None:
            for task in all_tasks:
                verdict = verdicts.get(task.id)
                if verdict is None:
                    continue
                task.completion_confidence = min(1.0, max(0.0, float(verdict.confidence)))
                task.last_verified_at = now
                recorded_complete = task.status == TaskStatus.COMPLETED
                if verdict.complete == recorded_complete:
                    continue
                target = TaskStatus.COMPLETED if verdict.complete else TaskStatus.PENDING
                note = (
                    f"[{now}] audit: recorded {task.status}, verified "
                    f"{'complete' if verdict.complete else 'incomplete'} "
                    f"(confidence {task.completion_confidence:.2f}). {verdict.evidence}".strip()
                )
                corrections.append(
                    AuditCorrection(
                        task_id=task.id,
                        from_status=str(task.status),
                        to_status=str(target),
                        note=note,
                    )
                )
                self._apply_status(task, target)
                task.verification_notes.append(note)
            data["last_audited_at"] = now

        self._mutate(_apply)
        for correction in corrections:
            logger.info(
                "Audit corrected %s: %s -> %s",
                correction.task_id,
                correction.from_status,
                correction.to_status,
            )
        return AuditReport(audited=len(verdicts), corrections=corrections, last_audited_at=now)

    def low_confidence_tasks(self, threshold: float) -> list[Task]:
        return [
            task
            for task in self.list_tasks()
            if task.last_verified_at is not None and task.completion_confidence < threshold
        ]

    def counts(self) -> dict[str, int]:
        counts = {str(status): 0 for status in TaskStatus}
        for task in self.list_tasks():
            counts[str(task.status)] += 1
        return counts

    def export_text(self) -> str:
        return json.dumps(
            {"version": self.version, "tasks": [task.to_dict() for task in self.list_tasks()]},
            ensure_ascii=False,
            indent=2,
        )

    def import_text(self, text: str) -> int:
        payload = json.loads(text)
        tasks = [Task.from_dict(item) for item in payload.get("tasks", [])]
        edges = {task.id: task.dependencies for task in tasks}
        for task in tasks:
            missing = [dep for dep in task.dependencies if dep not in edges]
            if missing:
                raise UnknownTaskError(f"Unknown dependencies for {task.id}: {', '.join(missing)}")
        cycle = find_cycle(edges)
        if cycle:
            raise DependencyCycleError("Dependency cycle: " + " -> ".join(cycle))

        def _replace(current: list[Task], _: dict[str, Any]) -> int:
            current[:] = tasks
            return len(tasks)

        return self._mutate(_replace)
