from pathlib import Path

import pytest

from nightshift.state.store import StateStore
from nightshift.states import IllegalTransitionError, TaskStatus
from nightshift.tasks import (
    AuditVerdict,
    DependencyCycleError,
    Task,
    TaskGraph,
    TaskGraphError,
    UnknownTaskError,
)


def _graph(tmp_path: Path) -> TaskGraph:
    return TaskGraph(StateStore(tmp_path / "state"))


def test_executable_tasks_follow_priority_then_insertion_order(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("Low", priority=5, task_id="low")
    graph.add_task("First high", priority=1, task_id="high-1")
    graph.add_task("Second high", priority=1, task_id="high-2")
    graph.add_task("Blocked by low", priority=0, dependencies=["low"], task_id="dep")

    assert [task.id for task in graph.get_executable_tasks()] == ["high-1", "high-2", "low"]


def test_completing_dependencies_unlocks_dependents(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("A", task_id="a")
    graph.add_task("B", dependencies=["a"], task_id="b")
    graph.add_task("C", dependencies=["a", "b"], task_id="c")

    assert [task.id for task in graph.get_executable_tasks()] == ["a"]

    graph.update_task("a", status=TaskStatus.IN_PROGRESS)
    assert graph.get_executable_tasks() == []

    graph.update_task("a", status=TaskStatus.COMPLETED)
    assert [task.id for task in graph.get_executable_tasks()] == ["b"]

    graph.update_task("b", status=TaskStatus.COMPLETED)
    assert [task.id for task in graph.get_executable_tasks()] == ["c"]


def test_status_timestamps_are_maintained(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("A", task_id="a")

    started = graph.update_task("a", status="in_progress")
    assert started.started_at is not None
    done = graph.update_task("a", status="completed")
    assert done.completed_at is not None
    reopened = graph.update_task("a", status="pending")
    assert reopened.completed_at is None


def test_illegal_transition_is_rejected(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("A", task_id="a")
    graph.update_task("a", status="completed")

    with pytest.raises(IllegalTransitionError, match="completed -> in_progress"):
        graph.update_task("a", status="in_progress")
    assert graph.get_task("a").status == TaskStatus.COMPLETED


def test_dependency_validation(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("A", task_id="a")
    graph.add_task("B", dependencies=["a"], task_id="b")

    with pytest.raises(UnknownTaskError):
        graph.add_task("C", dependencies=["missing"], task_id="c")
    with pytest.raises(DependencyCycleError, match="a -> b -> a|b -> a -> b"):
        graph.update_task("a", dependencies=["b"])
    with pytest.raises(DependencyCycleError):
        graph.add_task("Self", dependencies=["self"], task_id="self")
    with pytest.raises(TaskGraphError, match="already exists"):
        graph.add_task("Again", task_id="a")
    with pytest.raises(TaskGraphError, match="Cannot update fields"):
        graph.update_task("a", created_at="never")

    assert graph.get_task("a").dependencies == []


def test_remove_task_refuses_when_required(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("A", task_id="a")
    graph.add_task("B", dependencies=["a"], task_id="b")

    with pytest.raises(TaskGraphError, match="required by: b"):
        graph.remove_task("a")

    graph.remove_task("b")
    graph.remove_task("a")
    assert graph.list_tasks() == []


def test_every_write_bumps_version(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    assert graph.version == 0

    graph.add_task("A", task_id="a")
    graph.update_task("a", priority=1)

    assert graph.version == 2


def test_audit_reconciles_recorded_status(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("Claimed done", task_id="done")
    graph.add_task("Really done", task_id="quiet")
    graph.add_task("Skipped", task_id="skip")
    graph.update_task("done", status="completed")
    graph.update_task("skip", status="skipped")

    def _verify(task: Task) -> AuditVerdict:
        if task.id == "done":
            return AuditVerdict(complete=False, confidence=0.3, evidence="no tests found")
        return AuditVerdict(complete=True, confidence=0.9, evidence="file present")

    report = graph.audit(_verify)

    assert report.audited == 2
    assert {(item.task_id, item.to_status) for item in report.corrections} == {
        ("done", "pending"),
        ("quiet", "completed"),
    }
    corrected = graph.get_task("done")
    assert corrected.status == TaskStatus.PENDING
    assert corrected.completion_confidence == 0.3
    assert "no tests found" in corrected.verification_notes[-1]
    assert graph.get_task("skip").last_verified_at is None
    assert graph.last_audited_at == report.last_audited_at
    assert [task.id for task in graph.low_confidence_tasks(0.6)] == ["done"]


def test_export_import_roundtrip(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    graph.add_task("A", task_id="a", assigned_role="planner")
    graph.add_task("B", dependencies=["a"], task_id="b")

    copy = TaskGraph(StateStore(tmp_path / "copy"))
    assert copy.import_text(graph.export_text()) == 2
    assert [task.to_dict() for task in copy.list_tasks()] == [
        task.to_dict() for task in graph.list_tasks()
    ]

    with pytest.raises(UnknownTaskError):
        copy.import_text('{"tasks": [{"id": "x", "dependencies": ["nope"]}]}')
    assert graph.counts()["pending"] == 2
