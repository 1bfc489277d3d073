from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from nightshift.agents.coordinator import NEXT_ROLES, MultiAgentCoordinator, SessionBusyError
from nightshift.agents.roles import RoleAgent
from nightshift.agents.runtime import (
    AgentExecutionError,
    AgentResult,
    AgentRuntime,
    AgentTimeoutError,
)
from nightshift.config import CONFIG_FILENAME, FactoryConfig, load_config
from nightshift.continuity import ForwardPromptStore
from nightshift.gate.ledger import SNAPSHOT_FILENAME, NagStatusLedger
from nightshift.gate.nags import NagRegistry, NagReport, NagStage
from nightshift.gate.runner import QualityGate
from nightshift.providers.costs import CostLedger
from nightshift.providers.failover import FailoverRuntime, RetryPolicy
from nightshift.providers.selector import ModelSelector, QuotaProber, RuntimeProber
from nightshift.state.store import STATE_DIRNAME, StateStore
from nightshift.states import (
    PROJECT_TRANSITIONS,
    AgentRole,
    ProjectStatus,
    TaskStatus,
    require_transition,
)
from nightshift.tasks import AuditReport, AuditVerdict, Task, TaskGraph, TaskGraphError
from nightshift.vcs.commit_policy import CommitPolicyChecker
from nightshift.vcs.git import GitClient
from nightshift.vcs.metadata import CommitMetadata, CommitRecord, render_message
from nightshift.vcs.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

FACTORY_STATE_DIRNAME = "nightshift"
WORKTREE_GITIGNORE = "*.lock\n.*-*\nstate/\n"
LEDGER_SNAPSHOT_PATH = f"{STATE_DIRNAME}/{SNAPSHOT_FILENAME}"
JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)
METRICS_LIMIT = 200


class ProjectError(RuntimeError):
    """Raised when a project-level operation cannot proceed."""


class ProjectNotFoundError(ProjectError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"Unknown project: {project_id}")
        self.project_id = project_id


class MergeConflictError(ProjectError):
    def __init__(self, project_id: str, paths: list[str]) -> None:
        super().__init__(f"Merge of {project_id} conflicts in: {', '.join(paths)}")
        self.project_id = project_id
        self.paths = list(paths)


class BudgetExceededError(ProjectError):
    def __init__(self, spent: float, limit: float) -> None:
        super().__init__(f"Budget exhausted: ${spent:.2f} spent of ${limit:.2f}")
        self.spent = spent
        self.limit = limit


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class DecisionContext:
    question: str
    option: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {"question": self.question, "option": self.option, "confidence": self.confidence}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DecisionContext:
        return cls(
            question=str(payload.get("question", "")),
            option=str(payload.get("option", "")),
            confidence=float(payload.get("confidence", 0.0)),
        )


@dataclass(slots=True)
class Project:
    id: str
    name: str
    branch_name: str
    worktree_path: str
    base_branch: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    parent_id: str | None = None
    children_ids: list[str] = field(default_factory=list)
    decision: DecisionContext | None = None
    total_cost: float = 0.0
    tokens_used: int = 0
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @property
    def path(self) -> Path:
        return Path(self.worktree_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "base_branch": self.base_branch,
            "status": str(self.status),
            "parent_id": self.parent_id,
            "children_ids": list(self.children_ids),
            "decision": self.decision.to_dict() if self.decision else None,
            "total_cost": self.total_cost,
            "tokens_used": self.tokens_used,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Project:
        decision = payload.get("decision")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            branch_name=str(payload.get("branch_name", "")),
            worktree_path=str(payload.get("worktree_path", "")),
            base_branch=str(payload.get("base_branch", "main")),
            status=ProjectStatus(payload.get("status", ProjectStatus.ACTIVE)),
            parent_id=payload.get("parent_id"),
            children_ids=[str(item) for item in payload.get("children_ids", [])],
            decision=DecisionContext.from_dict(decision) if isinstance(decision, dict) else None,
            total_cost=float(payload.get("total_cost", 0.0)),
            tokens_used=int(payload.get("tokens_used", 0)),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            updated_at=str(payload.get("updated_at") or _utcnow_iso()),
        )


@dataclass(slots=True)
class TaskRunResult:
    success: bool
    message: str
    tokens_used: int = 0
    cost: float = 0.0
    model: str | None = None
    task_id: str | None = None
    agent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "model": self.model,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
        }


def _initial_context(project: Project, objective: str) -> str:
    lines = [
        f"# {project.name}",
        "",
        f"- Project: `{project.id}`",
        f"- Branch: `{project.branch_name}` (from `{project.base_branch}`)",
        f"- Created: {project.created_at}",
    ]
    if project.parent_id:
        lines.append(f"- Parent project: `{project.parent_id}`")
    if project.decision:
        lines.extend(
            [
                "",
                "## Exploration decision",
                "",
                f"Question: {project.decision.question}",
                f"Option under test: {project.decision.option}",
                f"Confidence at branch time: {project.decision.confidence:.2f}",
            ]
        )
    lines.extend(["", "## Objective", "", objective or project.name, ""])
    return "\n".join(lines)


class Factory:
    """Project-level operations over isolated working copies of one repository."""

    def __init__(
        self,
        repo_root: Path,
        config: FactoryConfig | None = None,
        runtime: AgentRuntime | None = None,
        prober: QuotaProber | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config or load_config(self.repo_root / CONFIG_FILENAME)
        self.git = GitClient(self.repo_root)
        if not self.git.is_repository():
            raise ProjectError(f"Not a git repository: {self.repo_root}")
        # Lives in the shared git dir so factory bookkeeping never shows up in a checkout.
        self.store = StateStore(self.git.common_dir() / FACTORY_STATE_DIRNAME / "state")
        self.worktrees = WorktreeManager(self.repo_root, self.config.isolation)
        self.cost_ledger = CostLedger(self.store)
        self.clock = clock
        self.selector = ModelSelector(
            self.config.models,
            clock=clock,
            ledger=self.cost_ledger,
            providers=runtime.providers if runtime is not None else None,
        )
        self.runtime = runtime
        if prober is None and runtime is not None:
            prober = RuntimeProber(runtime)
        self.prober = prober
        self.commit_policy = CommitPolicyChecker(self.config.commit_policy, clock=clock)
        self._coordinators: dict[str, MultiAgentCoordinator] = {}

    def _projects(self) -> dict[str, dict[str, Any]]:
        payload = self.store.get_json("projects", default={})
        return payload if isinstance(payload, dict) else {}

    def get_project(self, project_id: str) -> Project:
        payload = self._projects().get(project_id)
        if payload is None:
            raise ProjectNotFoundError(project_id)
        return Project.from_dict(payload)

    def list_projects(self, status: ProjectStatus | str | None = None) -> list[Project]:
        projects = [Project.from_dict(item) for item in self._projects().values()]
        if status is not None:
            projects = [project for project in projects if project.status == ProjectStatus(status)]
        return sorted(projects, key=lambda project: (project.created_at, project.id))

    def _update_project(self, project_id: str, mutate: Callable[[Project], None]) -> Project:
        def _updater(payload: Any) -> dict[str, Any]:
            projects = payload if isinstance(payload, dict) else {}
            if project_id not in projects:
                raise ProjectNotFoundError(project_id)
            project = Project.from_dict(projects[project_id])
            mutate(project)
            project.updated_at = _utcnow_iso()
            projects[project_id] = project.to_dict()
            return projects

        return Project.from_dict(self.store.update_json("projects", _updater)[project_id])

    def update_project_status(self, project_id: str, status: ProjectStatus | str) -> Project:
        target = ProjectStatus(status)

        def _mutate(project: Project) -> None:
            require_transition(
                f"project {project_id}",
                PROJECT_TRANSITIONS,
                project.status,
                target,
                allow_same=True,
            )
            project.status = target

        project = self._update_project(project_id, _mutate)
        logger.info("Project %s is now %s", project_id, target)
        return project

    def _ancestors(self, project_id: str) -> list[str]:
        projects = self._projects()
        chain: list[str] = []
        current = projects.get(project_id, {}).get("parent_id")
        while current:
            if current in chain or current == project_id:
                raise ProjectError(f"Project tree contains a cycle at {current}")
            chain.append(current)
            current = projects.get(current, {}).get("parent_id")
        return chain

    def _register(self, project: Project) -> None:
        limit = self.config.tasks.max_exploration_branches

        def _updater(payload: Any) -> dict[str, Any]:
            projects = payload if isinstance(payload, dict) else {}
            if project.id in projects:
                raise ProjectError(f"Project already exists: {project.id}")
            if project.parent_id is not None:
                parent = projects.get(project.parent_id)
                if parent is None:
                    raise ProjectNotFoundError(project.parent_id)
                children = parent.setdefault("children_ids", [])
                if len(children) >= limit:
                    raise ProjectError(
                        f"Project {project.parent_id} already has {len(children)} "
                        f"exploration branches (limit {limit})."
                    )
                children.append(project.id)
            projects[project.id] = project.to_dict()
            return projects

        self.store.update_json("projects", _updater)

    def _unregister(self, project: Project) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            projects = payload if isinstance(payload, dict) else {}
            projects.pop(project.id, None)
            parent = projects.get(project.parent_id or "")
            if parent is not None:
                parent["children_ids"] = [
                    child for child in parent.get("children_ids", []) if child != project.id
                ]
            return projects

        self.store.update_json("projects", _updater)
        self.store.update_json(
            "leases",
            lambda payload: {
                key: value
                for key, value in (payload if isinstance(payload, dict) else {}).items()
                if key != project.id
            },
        )

    def create_project(
        self,
        name: str,
        project_id: str | None = None,
        base_branch: str | None = None,
        parent_id: str | None = None,
        decision: DecisionContext | None = None,
        objective: str = "",
    ) -> Project:
        project_id = project_id or uuid4().hex[:12]
        if project_id in self._projects():
            raise ProjectError(f"Project already exists: {project_id}")
        base = base_branch or self.config.isolation.base_branch
        if parent_id is not None:
            parent = self.get_project(parent_id)
            self._ancestors(parent_id)
            if len(parent.children_ids) >= self.config.tasks.max_exploration_branches:
                raise ProjectError(
                    f"Project {parent_id} already has the maximum of "
                    f"{self.config.tasks.max_exploration_branches} exploration branches."
                )
            base = base_branch or parent.branch_name

        worktree = self.worktrees.create_worktree(project_id, base)
        project = Project(
            id=project_id,
            name=name,
            branch_name=worktree.branch,
            worktree_path=str(worktree.path),
            base_branch=base,
            parent_id=parent_id,
            decision=decision,
        )
        try:
            self._seed_worktree(project, objective)
            self._register(project)
        except Exception:
            logger.warning("Rolling back project %s after a failed setup", project_id)
            self.worktrees.remove_worktree(project_id)
            raise
        logger.info("Created project %s (%s) on %s", project.id, project.name, project.branch_name)
        return project

    def _seed_worktree(self, project: Project, objective: str) -> None:
        meta_dir = project.path / STATE_DIRNAME
        meta_dir.mkdir(parents=True, exist_ok=True)
        (meta_dir / ".gitignore").write_text(WORKTREE_GITIGNORE, encoding="utf-8")
        (meta_dir / "initial-context.md").write_text(
            _initial_context(project, objective), encoding="utf-8"
        )

        registry = NagRegistry(StateStore.for_worktree(project.path))
        if self.config.nags:
            registry.seed(self.config.nags)
        else:
            registry.apply_project_defaults(project.path)
        self._snapshot_ledger(project.path)

        ForwardPromptStore(project.path).update(
            objective=objective or project.name,
            current_status="Project created; no work started yet.",
        )
        self.worktrees.commit_with_metadata(
            project.path,
            f"chore: seed project {project.id}",
            CommitMetadata(
                intent=f"Seed workspace for {project.name}",
                expected_outcome="Agents can resume from the forward prompt",
                files_changed=[
                    f"{STATE_DIRNAME}/.gitignore",
                    f"{STATE_DIRNAME}/initial-context.md",
                    f"{STATE_DIRNAME}/forward-prompt.md",
                    LEDGER_SNAPSHOT_PATH,
                ],
                context_summary=objective or project.name,
                agent_id="factory",
            ),
        )

    def delete_project(self, project_id: str) -> bool:
        project = self.get_project(project_id)
        for child_id in list(project.children_ids):
            if child_id in self._projects():
                self.delete_project(child_id)
        self._coordinators.pop(project_id, None)
        removed = self.worktrees.remove_worktree(project_id)
        self._unregister(project)
        logger.info("Deleted project %s", project_id)
        return removed

    def _worktree(self, project_id: str) -> Path:
        path = self.get_project(project_id).path
        if not path.exists():
            raise ProjectError(f"Working copy for {project_id} is missing: {path}")
        return path

    def task_graph(self, project_id: str) -> TaskGraph:
        return TaskGraph(StateStore.for_worktree(self._worktree(project_id)))

    def forward_prompt(self, project_id: str) -> ForwardPromptStore:
        return ForwardPromptStore(self._worktree(project_id))

    def quality_gate(self, project_id: str) -> QualityGate:
        return QualityGate(
            self._worktree(project_id),
            config=self.config.gate,
            runtime=self.runtime,
            clock=self.clock,
        )

    def coordinator(self, project_id: str) -> MultiAgentCoordinator:
        coordinator = self._coordinators.get(project_id)
        if coordinator is not None:
            return coordinator
        path = self._worktree(project_id)
        graph = TaskGraph(StateStore.for_worktree(path))

        def _commits(limit: int, agent_id: str | None = None) -> list[CommitRecord]:
            return self.worktrees.history(path, limit, agent_id=agent_id)

        coordinator = MultiAgentCoordinator(
            project_id,
            self.store,
            config=self.config.agents,
            commit_source=_commits,
            task_source=lambda: [task.to_dict() for task in graph.list_tasks()],
            code_root=path,
        )
        self._coordinators[project_id] = coordinator
        return coordinator

    def _lease_ttl(self) -> float:
        return max(30.0, float(self.config.agents.session_timeout_seconds) * 2.0)

    def _acquire_lease(self, project_id: str, session_id: str, task_id: str) -> None:
        now_epoch = self.clock()

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get(project_id)
            if isinstance(active, dict) and float(active.get("expires_epoch", 0)) > now_epoch:
                raise SessionBusyError(
                    f"Project {project_id} already has an active session "
                    f"({active.get('session_id')} on {active.get('task_id')})."
                )
            leases[project_id] = {
                "session_id": session_id,
                "task_id": task_id,
                "acquired_at": _utcnow_iso(),
                "expires_epoch": now_epoch + self._lease_ttl(),
            }
            return leases

        self.store.update_json("leases", _updater)

    def _release_lease(self, project_id: str, session_id: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get(project_id)
            if isinstance(active, dict) and active.get("session_id") == session_id:
                leases.pop(project_id)
            return leases

        self.store.update_json("leases", _updater)

    def _expire_leases(self) -> list[str]:
        now_epoch = self.clock()
        expired: list[str] = []

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            for project_id, lease in list(leases.items()):
                if not isinstance(lease, dict) or float(lease.get("expires_epoch", 0)) <= now_epoch:
                    expired.append(project_id)
                    leases.pop(project_id)
            return leases

        self.store.update_json("leases", _updater)
        for project_id in expired:
            logger.warning("Expired stale session lease for project %s", project_id)
        return expired

    def _record_event(self, event: dict[str, Any]) -> None:
        entry = {"at": _utcnow_iso(), **event}

        def _updater(payload: Any) -> list[Any]:
            metrics = payload if isinstance(payload, list) else []
            metrics.append(entry)
            return metrics[-METRICS_LIMIT:]

        self.store.update_json("metrics", _updater, default=[])

    def _add_usage(self, project_id: str, cost: float, tokens: int) -> None:
        def _mutate(project: Project) -> None:
            project.total_cost += cost
            project.tokens_used += tokens

        self._update_project(project_id, _mutate)

    def is_within_budget(self) -> bool:
        limit = self.config.budget.limit_usd
        return limit <= 0 or self.cost_ledger.total_cost() < limit

    def _execution_runtime(self, project_id: str) -> AgentRuntime:
        if self.runtime is None:
            raise ProjectError("No agent runtime configured.")
        agents = self.config.agents
        return FailoverRuntime(
            self.runtime,
            self.selector,
            RetryPolicy(
                max_retries=agents.max_retries,
                backoff_seconds=agents.retry_backoff_seconds,
                timeout_seconds=agents.session_timeout_seconds,
            ),
            self._record_event,
            prober=self.prober,
            project_id=project_id,
        )

    async def run_task(
        self,
        project_id: str,
        task_id: str,
        role: AgentRole | str | None = None,
        *,
        handoff_to: AgentRole | str | None = None,
    ) -> TaskRunResult:
        project = self.get_project(project_id)
        if project.status != ProjectStatus.ACTIVE:
            raise ProjectError(f"Project {project_id} is {project.status}, not active.")
        if not self.is_within_budget():
            raise BudgetExceededError(self.cost_ledger.total_cost(), self.config.budget.limit_usd)
        runtime = self._execution_runtime(project_id)
        graph = self.task_graph(project_id)
        task = graph.get_task(task_id)
        if task.id not in {item.id for item in graph.get_executable_tasks()}:
            raise TaskGraphError(f"Task {task_id} is not executable (status {task.status}).")

        agent_role = AgentRole(role or task.assigned_role or AgentRole.CODER)
        session_id = uuid4().hex
        self._acquire_lease(project_id, session_id, task.id)
        try:
            return await self._run_session(
                project, graph, task, agent_role, runtime, session_id, handoff_to
            )
        finally:
            self._release_lease(project_id, session_id)

    async def _run_session(
        self,
        project: Project,
        graph: TaskGraph,
        task: Task,
        agent_role: AgentRole,
        runtime: AgentRuntime,
        session_id: str,
        handoff_to: AgentRole | str | None,
    ) -> TaskRunResult:
        coordinator = self.coordinator(project.id)
        waiting = coordinator.active_agent()
        if waiting is not None and waiting.handoff is not None and waiting.role != agent_role:
            logger.info("Dropping pending handoff for %s in favour of %s", waiting.id, agent_role)
            coordinator.release(waiting.id)
        agent = coordinator.claim(agent_role, task.title, task_id=task.id)
        graph.update_task(task.id, status=TaskStatus.IN_PROGRESS)

        prompt_store = ForwardPromptStore(project.path)
        timeout = self.config.agents.session_timeout_seconds
        try:
            prompt = prompt_store.update(
                session_id=session_id,
                agent_id=agent.id,
                current_status=f"{agent.id} is working on {task.id}: {task.title}",
            )
            context = {
                "worktree": str(project.path),
                "project_id": project.id,
                "task_id": task.id,
                "objective": prompt.objective,
                "next_steps": prompt.next_steps,
                "handoff": agent.handoff.to_dict() if agent.handoff else None,
            }
            instruction = "\n\n".join(part for part in (task.title, task.description) if part)
            try:
                result = await asyncio.wait_for(
                    RoleAgent(agent_role, runtime).run(instruction, context), timeout=timeout
                )
            except AgentExecutionError as exc:
                result = AgentResult(success=False, output=str(exc))
        except TimeoutError as exc:
            self._requeue(graph, coordinator, task.id, agent.id)
            prompt_store.add_blocker(f"Session timed out on {task.id} after {timeout:g}s")
            prompt_store.update(current_status=f"Interrupted while working on {task.id}")
            self._checkpoint(project.path, prompt_store, agent.id, session_id)
            raise AgentTimeoutError(
                f"Session for {task.id} exceeded {timeout:g}s", runtime=runtime.name
            ) from exc
        except Exception:
            self._requeue(graph, coordinator, task.id, agent.id)
            raise

        cost = float(result.metadata.get("cost", 0.0))
        if result.tokens_used or cost:
            self._add_usage(project.id, cost, result.tokens_used)

        if result.success:
            graph.update_task(task.id, status=TaskStatus.COMPLETED)
            next_role = handoff_to if handoff_to is not None else NEXT_ROLES.get(agent_role)
            coordinator.complete_task(agent.id, result.output[:2000], next_role)
            prompt_store.update(current_status=f"Completed {task.id}: {task.title}")
            message = result.output
        else:
            reason = result.output.strip()[:300] or "agent reported failure"
            graph.update_task(task.id, status=TaskStatus.FAILED)
            coordinator.escalate(agent.id, reason)
            prompt_store.add_blocker(f"{task.id} failed: {reason}")
            prompt_store.update(current_status=f"Task {task.id} failed and was escalated")
            message = reason
        self._checkpoint(project.path, prompt_store, agent.id, session_id)
        logger.info(
            "Task %s finished by %s: %s", task.id, agent.id, "ok" if result.success else "failed"
        )
        return TaskRunResult(
            success=result.success,
            message=message,
            tokens_used=result.tokens_used,
            cost=cost,
            model=result.model,
            task_id=task.id,
            agent_id=agent.id,
        )

    @staticmethod
    def _requeue(
        graph: TaskGraph, coordinator: MultiAgentCoordinator, task_id: str, agent_id: str
    ) -> None:
        graph.update_task(task_id, status=TaskStatus.PENDING)
        coordinator.release(agent_id)
        logger.warning("Session for %s ended early; task returned to pending", task_id)

    def _snapshot_ledger(self, path: Path) -> None:
        ledger = NagStatusLedger(StateStore.for_worktree(path))
        ledger.restore_snapshot(path / LEDGER_SNAPSHOT_PATH)
        ledger.write_snapshot(path / LEDGER_SNAPSHOT_PATH)

    def _checkpoint(
        self,
        path: Path,
        prompt_store: ForwardPromptStore,
        agent_id: str | None = None,
        session_id: str | None = None,
    ) -> CommitRecord | None:
        self._snapshot_ledger(path)
        return prompt_store.commit(
            self.worktrees,
            agent_id=agent_id,
            session_id=session_id,
            extra_paths=[LEDGER_SNAPSHOT_PATH],
        )

    def checkpoint(
        self, project_id: str, *, agent_id: str | None = None, session_id: str | None = None
    ) -> CommitRecord | None:
        """Commit the forward prompt and a ledger snapshot for the next session."""
        path = self._worktree(project_id)
        return self._checkpoint(path, ForwardPromptStore(path), agent_id, session_id)

    async def run_gate(self, project_id: str, stage: NagStage | str) -> NagReport:
        return await self.quality_gate(project_id).run_stage(stage)

    def commit(
        self,
        project_id: str,
        title: str,
        metadata: CommitMetadata | None = None,
        *,
        body: str = "",
    ) -> CommitRecord | None:
        path = self._worktree(project_id)
        self.quality_gate(project_id).enforce(NagStage.PRE_COMMIT)
        self._snapshot_ledger(path)
        policy = self.commit_policy.check(path)
        if policy.violation:
            self._record_event(
                {"event": "commit_policy_violation", "project_id": project_id, **policy.to_dict()}
            )
        metadata = metadata or CommitMetadata(intent=title)
        if not metadata.files_changed:
            metadata.files_changed = GitClient(path).status_paths(
                exclude_prefixes=(f"{STATE_DIRNAME}/",)
            )
        return self.worktrees.commit_with_metadata(path, title, metadata, body=body)

    async def _review_task(self, task: Task) -> AuditVerdict:
        recorded_complete = task.status == TaskStatus.COMPLETED
        prompt = (
            f"Verify whether this task is actually complete in the working copy.\n"
            f"Task {task.id}: {task.title}\n{task.description}\n"
            f"Recorded status: {task.status}\n\n"
            'Reply with JSON only: {"complete": true|false, "confidence": 0.0-1.0, '
            '"evidence": "..."}'
        )
        if self.runtime is None:
            raise ProjectError("No agent runtime configured.")
        try:
            result = await RoleAgent(AgentRole.REVIEWER, self.runtime).run(prompt)
        except AgentExecutionError as exc:
            return AuditVerdict(complete=recorded_complete, confidence=0.0, evidence=str(exc))
        match = JSON_OBJECT_PATTERN.search(result.output)
        try:
            payload = json.loads(match.group(0)) if match else None
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            return AuditVerdict(
                complete=recorded_complete, confidence=0.0, evidence="unparseable review reply"
            )
        return AuditVerdict(
            complete=bool(payload.get("complete", False)),
            confidence=float(payload.get("confidence", 0.0)),
            evidence=str(payload.get("evidence", "")),
        )

    async def audit_project(
        self, project_id: str, verify: Callable[[Task], AuditVerdict] | None = None
    ) -> AuditReport:
        graph = self.task_graph(project_id)
        if verify is not None:
            return graph.audit(verify)
        verdicts = {
            task.id: await self._review_task(task)
            for task in graph.list_tasks()
            if task.status != TaskStatus.SKIPPED
        }

        def _lookup(task: Task) -> AuditVerdict:
            return verdicts.get(task.id) or AuditVerdict(
                complete=task.status == TaskStatus.COMPLETED, confidence=0.0
            )

        return graph.audit(_lookup)

    def exploration_candidates(self, project_id: str) -> list[Task]:
        threshold = self.config.tasks.exploration_confidence_threshold
        return self.task_graph(project_id).low_confidence_tasks(threshold)

    def explore(
        self, project_id: str, question: str, options: list[str], confidence: float
    ) -> list[Project]:
        parent = self.get_project(project_id)
        threshold = self.config.tasks.exploration_confidence_threshold
        if confidence >= threshold:
            logger.info(
                "Confidence %.2f meets threshold %.2f; not branching %s",
                confidence,
                threshold,
                project_id,
            )
            return []
        room = self.config.tasks.max_exploration_branches - len(parent.children_ids)
        if len(options) > room:
            logger.warning(
                "Only %d exploration branch(es) left for %s; dropping %d option(s)",
                max(room, 0),
                project_id,
                len(options) - max(room, 0),
            )
        children: list[Project] = []
        for option in options[: max(room, 0)]:
            child_id = self._next_child_id(parent.id)
            children.append(
                self.create_project(
                    f"{parent.name}: {option}",
                    project_id=child_id,
                    parent_id=parent.id,
                    decision=DecisionContext(question, option, confidence),
                    objective=f"{question}\n\nExplore option: {option}",
                )
            )
        return children

    def _next_child_id(self, parent_id: str) -> str:
        existing = self._projects()
        index = 1
        while f"{parent_id}-alt{index}" in existing or self.worktrees.exists(
            f"{parent_id}-alt{index}"
        ):
            index += 1
        return f"{parent_id}-alt{index}"

    def _drop_project_bookkeeping(self) -> None:
        """Keep the target's copy of per-project bookkeeping in an in-progress merge."""
        tracked = self.git.run(["cat-file", "-e", f"HEAD:{STATE_DIRNAME}"], check=False)
        self.git.run(["reset", "-q", "HEAD", "--", STATE_DIRNAME], check=False)
        if tracked.returncode == 0:
            self.git.run(["checkout", "HEAD", "--", STATE_DIRNAME], check=False)
        self.git.run(["clean", "-fdq", "--", STATE_DIRNAME], check=False)

    def merge_project(
        self, project_id: str, target_branch: str | None = None
    ) -> CommitRecord | None:
        project = self.get_project(project_id)
        require_transition(
            f"project {project_id}", PROJECT_TRANSITIONS, project.status, ProjectStatus.COMPLETED
        )
        self.quality_gate(project_id).enforce(NagStage.PRE_PUSH)
        target = target_branch or project.base_branch
        current = self.git.current_branch()
        if current != target:
            raise ProjectError(f"Base repository is on {current}, expected {target}.")
        if self.git.run(["diff", "--quiet", "HEAD"], check=False).returncode != 0:
            raise ProjectError("Base repository has uncommitted changes.")

        changed = self.git.output(
            [
                "diff",
                "--name-only",
                f"{target}...{project.branch_name}",
                "--",
                ".",
                f":(exclude){STATE_DIRNAME}",
            ]
        ).splitlines()
        message = render_message(
            f"merge: {project.name} ({project.branch_name})",
            CommitMetadata(
                intent=f"Land project {project.id} into {target}",
                expected_outcome=f"{target} contains the work from {project.branch_name}",
                files_changed=changed,
                context_summary=ForwardPromptStore(project.path).summary()
                if project.path.exists()
                else "",
                agent_id="factory",
            ),
        )

        proc = self.git.run(["merge", "--no-ff", "--no-commit", project.branch_name], check=False)
        in_progress = self.git.run(["rev-parse", "-q", "--verify", "MERGE_HEAD"], check=False)
        if in_progress.returncode != 0:
            if proc.returncode != 0:
                detail = proc.stderr.strip() or proc.stdout.strip()
                raise ProjectError(f"git merge failed: {detail}")
            logger.info("Nothing to merge for %s; %s is up to date", project_id, target)
            self.update_project_status(project_id, ProjectStatus.COMPLETED)
            return None

        self._drop_project_bookkeeping()
        conflicts = self.git.output(["diff", "--name-only", "--diff-filter=U"]).splitlines()
        if conflicts:
            self.git.run(["merge", "--abort"], check=False)
            logger.warning("Merge of %s aborted, conflicts in %s", project_id, conflicts)
            raise MergeConflictError(project_id, conflicts)

        self.git.run(
            ["commit", "--no-verify", "--cleanup=whitespace", "-F", "-"], input_text=message
        )
        record = self.worktrees.extract_commit_metadata(self.repo_root, "HEAD")
        self.update_project_status(project_id, ProjectStatus.COMPLETED)
        logger.info("Merged %s into %s as %s", project.branch_name, target, record.commit_hash[:10])
        return record

    async def check_health(self) -> dict[str, Any]:
        now = datetime.now(UTC)
        limit = self.config.tasks.long_running_task_seconds
        warnings: list[str] = []
        for project in self.list_projects(ProjectStatus.ACTIVE):
            if not project.path.exists():
                warnings.append(f"{project.id}: working copy is missing")
                continue
            for task in TaskGraph(StateStore.for_worktree(project.path)).list_tasks():
                if task.status != TaskStatus.IN_PROGRESS or not task.started_at:
                    continue
                age = (now - datetime.fromisoformat(task.started_at)).total_seconds()
                if age > limit:
                    warnings.append(
                        f"{project.id}: task {task.id} in progress for {age / 60:.0f} minutes"
                    )
        for warning in warnings:
            logger.warning("Health: %s", warning)

        expired = self._expire_leases()
        quota: list[dict[str, Any]] = []
        if self.prober is not None:
            results = await self.selector.probe_quota(self.prober)
            quota = [
                {"model": check.model, "available": check.available, "error": check.error}
                for check in results
            ]
        return {
            "warnings": warnings,
            "expired_leases": expired,
            "quota": quota,
            "rate_limited": sorted(self.selector.state.rate_limited),
            "within_budget": self.is_within_budget(),
            "total_cost": self.cost_ledger.total_cost(),
        }

    def status(self, project_id: str) -> dict[str, Any]:
        project = self.get_project(project_id)
        path = self._worktree(project_id)
        graph = self.task_graph(project_id)
        gate = self.quality_gate(project_id)
        return {
            "project": project.to_dict(),
            "tasks": graph.counts(),
            "executable": [task.id for task in graph.get_executable_tasks()],
            "forward_prompt": ForwardPromptStore(path).summary(),
            "ledger": {
                nag_id: str(entry.status) for nag_id, entry in gate.ledger.statuses().items()
            },
            "commit_policy": self.commit_policy.check(path).to_dict(),
            "agents": [agent.to_dict() for agent in self.coordinator(project_id).agents],
        }
