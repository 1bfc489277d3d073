from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from nightshift.agents.context import (
    CodeIndexHandle,
    CollaborationLog,
    CollaborationMessage,
    KnowledgeBase,
    KnowledgeEntry,
    MessageKind,
    SharedContext,
)
from nightshift.config import AgentsConfig
from nightshift.state.store import StateStore
from nightshift.states import AGENT_TRANSITIONS, AgentRole, AgentState, require_transition
from nightshift.vcs.metadata import CommitRecord

logger = logging.getLogger(__name__)

CommitSource = Callable[..., list[CommitRecord]]
TaskSource = Callable[[], list[dict[str, Any]]]

DEFAULT_ROLES = (AgentRole.PLANNER, AgentRole.CODER, AgentRole.CURATOR, AgentRole.TESTER)

ROLE_TRANSITIONS: dict[AgentRole, str] = {
    AgentRole.PLANNER: "Implement planned features",
    AgentRole.CODER: "Review and test implemented code",
    AgentRole.TESTER: "Fix any identified issues",
    AgentRole.CURATOR: "Document and organize completed work",
    AgentRole.REVIEWER: "Approve or request changes",
}
DEFAULT_NEXT_TASK = "Continue with next logical step"

NEXT_ROLES: dict[AgentRole, AgentRole] = {
    AgentRole.PLANNER: AgentRole.CODER,
    AgentRole.CODER: AgentRole.TESTER,
    AgentRole.TESTER: AgentRole.CURATOR,
}

# Failures travel back to the role that produced the broken work.
ESCALATION_ROUTES: dict[AgentRole, AgentRole] = {
    AgentRole.TESTER: AgentRole.CODER,
    AgentRole.REVIEWER: AgentRole.CODER,
    AgentRole.CURATOR: AgentRole.CODER,
    AgentRole.CODER: AgentRole.PLANNER,
    AgentRole.PLANNER: AgentRole.PLANNER,
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class AgentNotFoundError(LookupError):
    """Raised when an agent identifier is unknown to the coordinator."""


class SessionBusyError(RuntimeError):
    """Raised when a second agent session is requested while one is active."""


@dataclass(slots=True)
class HandoffBundle:
    from_agent: str
    from_role: str
    to_role: str
    summary: str
    next_task: str
    recent_commits: list[CommitRecord] = field(default_factory=list)
    related_entries: list[KnowledgeEntry] = field(default_factory=list)
    escalation: bool = False
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_agent": self.from_agent,
            "from_role": self.from_role,
            "to_role": self.to_role,
            "summary": self.summary,
            "next_task": self.next_task,
            "recent_commits": [record.to_dict() for record in self.recent_commits],
            "related_entries": [entry.to_dict() for entry in self.related_entries],
            "escalation": self.escalation,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class AgentContext:
    id: str
    role: AgentRole
    state: AgentState = AgentState.IDLE
    current_task: str | None = None
    task_id: str | None = None
    handoff: HandoffBundle | None = None
    failures: int = 0
    created_at: str = field(default_factory=_utcnow_iso)
    shared: SharedContext | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": str(self.role),
            "state": str(self.state),
            "current_task": self.current_task,
            "task_id": self.task_id,
            "pending_handoff": self.handoff is not None,
            "failures": self.failures,
            "created_at": self.created_at,
        }


class MultiAgentCoordinator:
    """Tracks role instances for one project and moves work between them."""

    def __init__(
        self,
        project_id: str,
        store: StateStore,
        *,
        config: AgentsConfig | None = None,
        commit_source: CommitSource | None = None,
        task_source: TaskSource | None = None,
        code_root: Path | None = None,
    ) -> None:
        self.project_id = project_id
        self.config = config or AgentsConfig()
        self.commit_source = commit_source
        self.task_source = task_source
        self.knowledge = KnowledgeBase(store)
        self.log = CollaborationLog(
            store,
            max_entries=self.config.collaboration_log_max,
            keep=self.config.collaboration_log_keep,
        )
        self.shared = SharedContext(
            project_id=project_id,
            code_index=CodeIndexHandle(root=code_root) if code_root else None,
        )
        self._agents: dict[str, AgentContext] = {}
        self._counters: dict[AgentRole, int] = {}
        for role in DEFAULT_ROLES:
            self._create_agent(role)

    @property
    def agents(self) -> list[AgentContext]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> AgentContext:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Unknown agent: {agent_id}")
        return agent

    def _create_agent(self, role: AgentRole) -> AgentContext:
        count = self._counters.get(role, 0) + 1
        self._counters[role] = count
        agent = AgentContext(id=f"{role}_{count}", role=role, shared=self.shared)
        self._agents[agent.id] = agent
        logger.debug("Created agent %s", agent.id)
        return agent

    def _find_or_create_idle(self, role: AgentRole) -> AgentContext:
        for agent in self._agents.values():
            if agent.role == role and agent.state == AgentState.IDLE:
                return agent
        return self._create_agent(role)

    def active_agent(self) -> AgentContext | None:
        return next(
            (agent for agent in self._agents.values() if agent.state == AgentState.ACTIVE),
            None,
        )

    @staticmethod
    def _transition(agent: AgentContext, target: AgentState) -> None:
        require_transition(f"agent {agent.id}", AGENT_TRANSITIONS, agent.state, target)
        agent.state = target

    def _record(self, sender: str, recipient: str, kind: MessageKind, content: str) -> None:
        self.log.append(
            CollaborationMessage(
                sender=sender,
                recipient=recipient,
                kind=kind,
                content=content,
                project_id=self.project_id,
            )
        )

    def _ensure_no_other_active(self, agent: AgentContext) -> None:
        active = self.active_agent()
        if active is not None and active.id != agent.id:
            raise SessionBusyError(
                f"Agent {active.id} already holds the session for project {self.project_id}."
            )

    def assign_task(self, agent_id: str, task: str, *, task_id: str | None = None) -> AgentContext:
        agent = self.get_agent(agent_id)
        self._ensure_no_other_active(agent)
        self._transition(agent, AgentState.ACTIVE)
        agent.current_task = task
        agent.task_id = task_id
        agent.handoff = None
        self._record("coordinator", agent.id, "request", task)
        logger.info("Assigned %s to %s", task_id or task[:60], agent.id)
        return agent

    def claim(
        self, role: AgentRole | str, task: str, *, task_id: str | None = None
    ) -> AgentContext:
        """Give ``task`` to the agent waiting on a handoff for ``role``, or to an idle one."""
        role = AgentRole(role)
        active = self.active_agent()
        if active is not None and active.role == role and active.handoff is not None:
            active.current_task = task
            active.task_id = task_id
            self._record("coordinator", active.id, "request", task)
            return active
        return self.assign_task(self._find_or_create_idle(role).id, task, task_id=task_id)

    def refresh_shared_context(self) -> SharedContext:
        if self.commit_source is not None:
            self.shared.recent_commits = self.commit_source(10)
        if self.task_source is not None:
            self.shared.active_tasks = [
                task
                for task in self.task_source()
                if task.get("status") in {"pending", "in_progress", "blocked"}
            ]
        if self.shared.code_index is not None:
            self.shared.code_index.refreshed_at = _utcnow_iso()
        return self.shared

    def complete_task(
        self,
        agent_id: str,
        result: str,
        next_role: AgentRole | str | None = None,
    ) -> HandoffBundle | None:
        agent = self.get_agent(agent_id)
        self._transition(agent, AgentState.COMPLETED)
        self._record(agent.id, "coordinator", "response", result)
        self.knowledge.add(
            project_id=self.project_id,
            author=agent.id,
            kind="result",
            content=result,
            tags=[str(agent.role)] + ([agent.task_id] if agent.task_id else []),
        )
        self.refresh_shared_context()
        if next_role is not None:
            return self.handoff(agent.id, next_role)
        self._release(agent)
        return None

    def _release(self, agent: AgentContext) -> None:
        self._transition(agent, AgentState.IDLE)
        agent.current_task = None
        agent.task_id = None
        agent.handoff = None

    def release(self, agent_id: str) -> None:
        """Return an agent to idle, abandoning any pending handoff it holds."""
        agent = self.get_agent(agent_id)
        if agent.state == AgentState.ACTIVE:
            self._transition(agent, AgentState.COMPLETED)
        if agent.state != AgentState.IDLE:
            self._release(agent)

    def _departing_commits(self, agent: AgentContext) -> list[CommitRecord]:
        if self.commit_source is None:
            return []
        return self.commit_source(self.config.handoff_commit_limit, agent_id=agent.id)

    def _build_bundle(
        self,
        agent: AgentContext,
        to_role: AgentRole,
        next_task: str,
        *,
        escalation: bool,
    ) -> HandoffBundle:
        query = " ".join(filter(None, [agent.current_task, next_task]))
        related = self.knowledge.search(query, project_id=self.project_id, limit=5)
        return HandoffBundle(
            from_agent=agent.id,
            from_role=str(agent.role),
            to_role=str(to_role),
            summary=f"{agent.id} finished: {agent.current_task or 'no task recorded'}",
            next_task=next_task,
            recent_commits=self._departing_commits(agent),
            related_entries=related,
            escalation=escalation,
        )

    def _activate_receiver(self, bundle: HandoffBundle, to_role: AgentRole) -> AgentContext:
        receiver = self._find_or_create_idle(to_role)
        self._transition(receiver, AgentState.ACTIVE)
        receiver.current_task = bundle.next_task
        receiver.task_id = None
        receiver.handoff = bundle
        return receiver

    def handoff(self, from_agent_id: str, to_role: AgentRole | str) -> HandoffBundle:
        agent = self.get_agent(from_agent_id)
        to_role = AgentRole(to_role)
        if agent.state == AgentState.ACTIVE:
            self._transition(agent, AgentState.COMPLETED)
        next_task = ROLE_TRANSITIONS.get(agent.role, DEFAULT_NEXT_TASK)
        bundle = self._build_bundle(agent, to_role, next_task, escalation=False)
        self._release(agent)
        receiver = self._activate_receiver(bundle, to_role)
        self._record(agent.id, receiver.id, "handoff", f"{bundle.summary} -> {next_task}")
        logger.info("Handoff %s -> %s: %s", agent.id, receiver.id, next_task)
        return bundle

    def escalate(self, agent_id: str, reason: str) -> HandoffBundle:
        agent = self.get_agent(agent_id)
        self._transition(agent, AgentState.FAILED)
        agent.failures += 1
        to_role = ESCALATION_ROUTES.get(agent.role, AgentRole.PLANNER)
        bundle = self._build_bundle(agent, to_role, f"Fix: {reason}", escalation=True)
        self._release(agent)
        receiver = self._activate_receiver(bundle, to_role)
        self._record(agent.id, receiver.id, "escalation", reason)
        logger.warning("Escalated %s -> %s: %s", agent.id, receiver.id, reason)
        return bundle

    def reset_agents(self) -> None:
        for agent in self._agents.values():
            agent.state = AgentState.IDLE
            agent.current_task = None
            agent.task_id = None
            agent.handoff = None

    def search_shared_context(self, query: str) -> dict[str, Any]:
        terms = [term for term in query.lower().split() if term]

        def _matches(text: str) -> bool:
            lowered = text.lower()
            return any(term in lowered for term in terms)

        return {
            "knowledge": [
                entry.to_dict()
                for entry in self.knowledge.search(query, project_id=self.project_id)
            ],
            "commits": [
                record.to_dict()
                for record in self.shared.recent_commits
                if _matches(f"{record.title} {record.metadata.intent}")
            ],
            "tasks": [
                task
                for task in self.shared.active_tasks
                if _matches(f"{task.get('title', '')} {task.get('description', '')}")
            ],
        }

    def system_state(self) -> dict[str, Any]:
        counts = {str(state): 0 for state in AgentState}
        for agent in self._agents.values():
            counts[str(agent.state)] += 1
        return {
            "project_id": self.project_id,
            "agents": [agent.to_dict() for agent in self._agents.values()],
            "counts": counts,
            "shared_context": self.shared.to_dict(),
            "log_size": len(self.log.entries(self.project_id)),
        }

    def export_log(self) -> str:
        return self.log.export_text()

    def import_log(self, text: str) -> int:
        """Replace the collaboration log with an export; returns the number of messages kept."""
        return self.log.import_text(text)
