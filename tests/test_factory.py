import asyncio
import json
import shutil
import subprocess
import sys
import time
from pathlib import Path

import pytest

from nightshift.agents.coordinator import SessionBusyError
from nightshift.agents.runtime import (
    AgentRequest,
    AgentResult,
    AgentRuntime,
    AgentTimeoutError,
    QuotaCheck,
)
from nightshift.config import FactoryConfig
from nightshift.continuity import ForwardPromptFormatError
from nightshift.factory import (
    BudgetExceededError,
    Factory,
    MergeConflictError,
    ProjectError,
    ProjectNotFoundError,
)
from nightshift.gate import GateBlockedError, LedgerStatus
from nightshift.providers import CostRecord
from nightshift.states import IllegalTransitionError, ProjectStatus, TaskStatus
from nightshift.tasks import AuditVerdict, TaskGraphError
from nightshift.vcs import GitClient


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "checkout", "-q", "-b", "main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakeRuntime(AgentRuntime):
    name = "fake"

    def __init__(self, replies: list | None = None, *, delay: float = 0.0) -> None:
        self.replies = list(replies or [])
        self.delay = delay
        self.requests: list[AgentRequest] = []

    async def execute(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if self.replies else "done"
        if isinstance(reply, AgentResult):
            return reply
        return AgentResult(success=True, output=reply, tokens_used=100)

    async def check_quota(self, model: str) -> QuotaCheck:
        return QuotaCheck(model=model, available=True)


def _config(**gate) -> FactoryConfig:
    config = FactoryConfig.default()
    config.isolation.install_hooks = False
    config.agents.retry_backoff_seconds = 0.0
    for key, value in gate.items():
        setattr(config.gate, key, value)
    return config


def _factory(tmp_path: Path, config: FactoryConfig | None = None, **kwargs) -> Factory:
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    if not (repo / ".git").exists():
        _init_git_repo(repo)
    return Factory(repo, config or _config(), **kwargs)


def test_project_lifecycle_and_task_execution(tmp_path: Path) -> None:
    runtime = FakeRuntime(["model written", "route wired"])
    factory = _factory(tmp_path, runtime=runtime)

    project = factory.create_project("JWT auth", project_id="p1", objective="Add JWT login")

    assert project.branch_name == "ns/task/p1"
    assert project.path == tmp_path / "worktree_ns_task_p1"
    assert (project.path / ".nightshift" / ".gitignore").exists()
    assert "Add JWT login" in (project.path / ".nightshift" / "initial-context.md").read_text(
        encoding="utf-8"
    )
    assert factory.forward_prompt("p1").read().objective == "Add JWT login"
    assert factory.worktrees.is_clean(project.path)
    assert [item.id for item in factory.list_projects()] == ["p1"]

    graph = factory.task_graph("p1")
    graph.add_task("Write token model", task_id="a")
    graph.add_task("Wire login route", dependencies=["a"], task_id="b")
    assert [task.id for task in graph.get_executable_tasks()] == ["a"]

    with pytest.raises(TaskGraphError, match="not executable"):
        asyncio.run(factory.run_task("p1", "b"))

    first = asyncio.run(factory.run_task("p1", "a"))
    assert first.success is True
    assert first.message == "model written"
    assert first.agent_id == "coder_1"
    assert [task.id for task in graph.get_executable_tasks()] == ["b"]
    assert runtime.requests[0].role == "coder"
    assert runtime.requests[0].context["worktree"] == str(project.path)
    assert factory.coordinator("p1").active_agent().role == "tester"

    second = asyncio.run(factory.run_task("p1", "b"))
    assert second.success is True
    assert graph.counts()["completed"] == 2
    assert factory.coordinator("p1").get_agent("coder_1").state == "idle"

    refreshed = factory.get_project("p1")
    assert refreshed.tokens_used == 200
    assert refreshed.total_cost > 0
    assert factory.store.get_json("leases") == {}
    assert factory.forward_prompt("p1").read().current_status == "Completed b: Wire login route"
    assert factory.worktrees.is_clean(project.path)
    events = [item["event"] for item in factory.store.get_json("metrics")]
    assert events.count("runtime_success") == 2

    status = factory.status("p1")
    assert status["tasks"]["completed"] == 2
    assert status["executable"] == []

    assert factory.delete_project("p1") is True
    assert not project.path.exists()
    assert not factory.git.branch_exists("ns/task/p1")
    assert factory.list_projects() == []
    with pytest.raises(ProjectNotFoundError):
        factory.get_project("p1")


def test_project_registry_validation(tmp_path: Path) -> None:
    factory = _factory(tmp_path)
    factory.create_project("One", project_id="p1")

    with pytest.raises(ProjectError, match="already exists"):
        factory.create_project("Again", project_id="p1")
    with pytest.raises(ProjectNotFoundError):
        factory.create_project("Orphan", project_id="p2", parent_id="missing")
    with pytest.raises(ValueError):
        factory.create_project("Bad", project_id="../bad")
    assert [item.id for item in factory.list_projects()] == ["p1"]

    factory.update_project_status("p1", "paused")
    assert factory.list_projects(ProjectStatus.ACTIVE) == []
    with pytest.raises(ProjectError, match="not active"):
        asyncio.run(factory.run_task("p1", "anything"))
    with pytest.raises(IllegalTransitionError):
        factory.update_project_status("p1", "completed")


def test_factory_requires_git_repository(tmp_path: Path) -> None:
    with pytest.raises(ProjectError, match="Not a git repository"):
        Factory(tmp_path, _config())


def test_blocking_nag_gates_commit_until_ledger_is_ok(tmp_path: Path) -> None:
    config = _config(pre_commit_blocking=True)
    config.nags = [
        {
            "id": "build",
            "stage": "pre-commit",
            "command": f'"{sys.executable}" -c "raise SystemExit(1)"',
            "blocking": True,
        }
    ]
    factory = _factory(tmp_path, config)
    project = factory.create_project("Build gate", project_id="p1")
    (project.path / "feature.txt").write_text("new feature\n", encoding="utf-8")

    with pytest.raises(GateBlockedError, match="build"):
        factory.commit("p1", "feat: add feature")

    report = asyncio.run(factory.run_gate("p1", "pre-commit"))
    assert report.blocked is True
    assert factory.quality_gate("p1").ledger.get("build").status == LedgerStatus.NOK
    with pytest.raises(GateBlockedError):
        factory.commit("p1", "feat: add feature")

    factory.quality_gate("p1").set_status("build", "OK")
    record = factory.commit("p1", "feat: add feature")

    assert record is not None
    assert record.metadata.intent == "feat: add feature"
    assert record.metadata.files_changed == ["feature.txt"]
    assert factory.worktrees.is_clean(project.path)

    committed = subprocess.run(
        ["git", "show", "HEAD:.nightshift/nag-ledger.json"],
        cwd=project.path,
        check=True,
        text=True,
        capture_output=True,
    ).stdout
    assert json.loads(committed)["build"]["status"] == "OK"
    shutil.rmtree(project.path / ".nightshift" / "state")
    assert factory.quality_gate("p1").ledger.get("build").status == LedgerStatus.OK


def test_merge_lands_work_without_project_bookkeeping(tmp_path: Path) -> None:
    factory = _factory(tmp_path)
    project = factory.create_project("Landing", project_id="p1")
    (project.path / "app.py").write_text("print('hi')\n", encoding="utf-8")
    factory.commit("p1", "feat: add app")

    record = factory.merge_project("p1")

    assert record is not None
    assert record.metadata.files_changed == ["app.py"]
    assert (factory.repo_root / "app.py").read_text(encoding="utf-8") == "print('hi')\n"
    assert not (factory.repo_root / ".nightshift").exists()
    assert GitClient(factory.repo_root).is_clean()
    assert factory.get_project("p1").status == ProjectStatus.COMPLETED
    with pytest.raises(IllegalTransitionError):
        factory.merge_project("p1")


def test_merge_conflict_is_aborted(tmp_path: Path) -> None:
    factory = _factory(tmp_path)
    project = factory.create_project("Clash", project_id="p1")
    (project.path / "README.md").write_text("from project\n", encoding="utf-8")
    factory.commit("p1", "docs: project readme")
    (factory.repo_root / "README.md").write_text("from base\n", encoding="utf-8")
    _run(["git", "commit", "-am", "base readme"], cwd=factory.repo_root)

    with pytest.raises(MergeConflictError) as excinfo:
        factory.merge_project("p1")

    assert excinfo.value.paths == ["README.md"]
    merge_head = factory.git.run(["rev-parse", "-q", "--verify", "MERGE_HEAD"], check=False)
    assert merge_head.returncode != 0
    assert factory.get_project("p1").status == ProjectStatus.ACTIVE


def test_merge_requires_target_branch_checked_out(tmp_path: Path) -> None:
    factory = _factory(tmp_path)
    factory.create_project("Elsewhere", project_id="p1")
    _run(["git", "checkout", "-q", "-b", "other"], cwd=factory.repo_root)

    with pytest.raises(ProjectError, match="expected main"):
        factory.merge_project("p1")


def test_concurrent_session_is_refused_until_lease_expires(tmp_path: Path) -> None:
    now = [time.time()]
    factory = _factory(tmp_path, runtime=FakeRuntime(), clock=lambda: now[0])
    factory.create_project("Busy", project_id="p1")
    factory.task_graph("p1").add_task("Work", task_id="a")
    factory.store.set_json(
        "leases", {"p1": {"session_id": "other", "task_id": "a", "expires_epoch": now[0] + 10}}
    )

    with pytest.raises(SessionBusyError, match="other"):
        asyncio.run(factory.run_task("p1", "a"))
    assert factory.task_graph("p1").get_task("a").status == TaskStatus.PENDING

    now[0] += 11
    health = asyncio.run(factory.check_health())
    assert health["expired_leases"] == ["p1"]
    assert asyncio.run(factory.run_task("p1", "a")).success is True


def test_session_timeout_leaves_task_pending_with_blocker(tmp_path: Path) -> None:
    config = _config()
    config.agents.session_timeout_seconds = 0.05
    factory = _factory(tmp_path, config, runtime=FakeRuntime(delay=5))
    factory.create_project("Slow", project_id="p1")
    factory.task_graph("p1").add_task("Long job", task_id="a")

    with pytest.raises(AgentTimeoutError):
        asyncio.run(factory.run_task("p1", "a"))

    assert factory.task_graph("p1").get_task("a").status == TaskStatus.PENDING
    prompt = factory.forward_prompt("p1").read()
    assert any("timed out on a" in blocker for blocker in prompt.blockers)
    assert factory.coordinator("p1").active_agent() is None
    assert factory.store.get_json("leases") == {}


def test_session_setup_failure_returns_task_and_agent(tmp_path: Path) -> None:
    runtime = FakeRuntime()
    factory = _factory(tmp_path, runtime=runtime)
    project = factory.create_project("Corrupt", project_id="p1")
    factory.task_graph("p1").add_task("Implement auth", task_id="a")
    checkpoint = project.path / ".nightshift" / "forward-prompt.md"
    checkpoint.write_text("not a forward prompt\n", encoding="utf-8")

    with pytest.raises(ForwardPromptFormatError):
        asyncio.run(factory.run_task("p1", "a"))

    assert factory.task_graph("p1").get_task("a").status == TaskStatus.PENDING
    assert factory.coordinator("p1").active_agent() is None
    assert factory.store.get_json("leases") == {}
    assert runtime.requests == []

    checkpoint.unlink()
    assert asyncio.run(factory.run_task("p1", "a")).success is True


def test_failed_session_escalates_and_records_blocker(tmp_path: Path) -> None:
    runtime = FakeRuntime([AgentResult(success=False, output="compile error in auth.py")])
    factory = _factory(tmp_path, runtime=runtime)
    factory.create_project("Broken", project_id="p1")
    factory.task_graph("p1").add_task("Implement auth", task_id="a")

    result = asyncio.run(factory.run_task("p1", "a"))

    assert result.success is False
    assert result.message == "compile error in auth.py"
    assert factory.task_graph("p1").get_task("a").status == TaskStatus.FAILED
    coordinator = factory.coordinator("p1")
    assert coordinator.get_agent("coder_1").failures == 1
    assert coordinator.active_agent().role == "planner"
    assert factory.forward_prompt("p1").read().blockers == ["a failed: compile error in auth.py"]


def test_budget_limit_blocks_new_sessions(tmp_path: Path) -> None:
    config = _config()
    config.budget.limit_usd = 0.5
    factory = _factory(tmp_path, config, runtime=FakeRuntime())
    factory.create_project("Costly", project_id="p1")
    factory.task_graph("p1").add_task("Work", task_id="a")
    factory.cost_ledger.record(CostRecord(model="gemini-3-flash", tokens=10, cost=1.0))

    assert factory.is_within_budget() is False
    with pytest.raises(BudgetExceededError, match="Budget exhausted"):
        asyncio.run(factory.run_task("p1", "a"))

    factory.config.budget.limit_usd = 0
    assert factory.is_within_budget() is True


def test_run_task_without_runtime_is_rejected(tmp_path: Path) -> None:
    factory = _factory(tmp_path)
    factory.create_project("Offline", project_id="p1")
    factory.task_graph("p1").add_task("Work", task_id="a")

    with pytest.raises(ProjectError, match="No agent runtime"):
        asyncio.run(factory.run_task("p1", "a"))


def test_explore_branches_children_up_to_limit(tmp_path: Path) -> None:
    factory = _factory(tmp_path)
    factory.create_project("Cache", project_id="p1")

    assert factory.explore("p1", "Which cache?", ["redis"], confidence=0.9) == []

    children = factory.explore(
        "p1", "Which cache?", ["redis", "memcached", "sqlite", "files"], confidence=0.4
    )

    assert [child.id for child in children] == ["p1-alt1", "p1-alt2", "p1-alt3"]
    assert all(child.base_branch == "ns/task/p1" for child in children)
    assert children[0].decision.option == "redis"
    assert factory.get_project("p1").children_ids == ["p1-alt1", "p1-alt2", "p1-alt3"]
    assert factory.explore("p1", "Which cache?", ["files"], confidence=0.1) == []

    factory.delete_project("p1")
    assert factory.list_projects() == []
    assert not children[0].path.exists()


def test_audit_project_with_reviewer_replies(tmp_path: Path) -> None:
    runtime = FakeRuntime(
        [
            'Verdict: {"complete": false, "confidence": 0.2, "evidence": "no tests"}',
            "not json at all",
        ]
    )
    factory = _factory(tmp_path, runtime=runtime)
    factory.create_project("Audit", project_id="p1")
    graph = factory.task_graph("p1")
    graph.add_task("Claimed", task_id="a")
    graph.add_task("Unknown", task_id="b")
    graph.update_task("a", status="completed")

    report = asyncio.run(factory.audit_project("p1"))

    assert report.audited == 2
    assert [item.task_id for item in report.corrections] == ["a"]
    assert graph.get_task("a").status == TaskStatus.PENDING
    assert graph.get_task("b").status == TaskStatus.PENDING
    assert runtime.requests[0].role == "reviewer"
    assert [task.id for task in factory.exploration_candidates("p1")] == ["a", "b"]

    verified = asyncio.run(
        factory.audit_project("p1", lambda task: AuditVerdict(complete=True, confidence=1.0))
    )
    assert len(verified.corrections) == 2
    assert factory.exploration_candidates("p1") == []


def test_check_health_reports_long_running_tasks(tmp_path: Path) -> None:
    factory = _factory(tmp_path, runtime=FakeRuntime())
    factory.create_project("Health", project_id="p1")
    graph = factory.task_graph("p1")
    graph.add_task("Stuck", task_id="a")
    graph.update_task("a", status="in_progress")

    def _backdate(payload: dict) -> dict:
        for task in payload["tasks"]:
            task["started_at"] = "2020-01-01T00:00:00+00:00"
        return payload

    graph.store.update_json("tasks", _backdate)

    health = asyncio.run(factory.check_health())

    assert any("task a in progress" in warning for warning in health["warnings"])
    assert len(health["quota"]) == len(factory.selector.catalog)
    assert all(item["available"] for item in health["quota"])
    assert health["within_budget"] is True
    assert health["total_cost"] == 0.0
