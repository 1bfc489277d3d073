from __future__ import annotations

import json
from typing import Any

from nightshift.agents.runtime import AgentRequest, AgentResult, AgentRuntime
from nightshift.states import AgentRole

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}

ROLE_CAPABILITIES: dict[AgentRole, list[str]] = {
    AgentRole.PLANNER: ["read_file", "search"],
    AgentRole.CODER: ["read_file", "write_file", "edit_file", "run_command", "search"],
    AgentRole.TESTER: ["read_file", "write_file", "run_command", "search"],
    AgentRole.CURATOR: ["read_file", "write_file", "edit_file", "search"],
    AgentRole.REVIEWER: ["read_file", "search"],
}

ROLE_PROMPTS: dict[AgentRole, str] = {
    AgentRole.PLANNER: """
You are the Planner working unattended inside an isolated working copy.
Break the objective into small, ordered, verifiable steps with explicit dependencies.
You produce plans, not code.
""".strip(),
    AgentRole.CODER: """
You are the Coder working unattended inside an isolated working copy.
Implement exactly the assigned task with minimal, focused changes and commit often.
Never push. Record blockers instead of guessing.
""".strip(),
    AgentRole.TESTER: """
You are the Tester.
Write and run tests for the most recent changes and report failures with reproduction steps.
""".strip(),
    AgentRole.CURATOR: """
You are the Curator.
Document completed work, keep the knowledge base tidy and summarise decisions for the next agent.
""".strip(),
    AgentRole.REVIEWER: """
You are the Reviewer.
Judge whether work meets its stated intent. Answer with OK or NOK followed by your reasons.
""".strip(),
}


class RoleAgent:
    """Binds a role prompt and capability policy to the agent runtime."""

    def __init__(
        self, role: AgentRole | str, runtime: AgentRuntime, *, model: str | None = None
    ) -> None:
        self.role = AgentRole(role)
        self.runtime = runtime
        self.model = model
        self.system_prompt = ROLE_PROMPTS[self.role]

    @staticmethod
    def normalize_capabilities(capabilities: list[str] | None) -> list[str]:
        if not capabilities:
            return []
        normalized = sorted({str(tool).strip() for tool in capabilities if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise ValueError("Capability policy rejected unknown tools: " + ", ".join(unknown))
        return normalized

    def build_request(
        self,
        task: str,
        context: dict[str, Any] | None = None,
        capabilities: list[str] | None = None,
    ) -> AgentRequest:
        allowed = self.normalize_capabilities(
            capabilities if capabilities is not None else ROLE_CAPABILITIES[self.role]
        )
        instruction = task
        if context:
            instruction = (
                f"{task}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2, default=str)}"
            )
        return AgentRequest(
            role=str(self.role),
            task=instruction,
            capabilities=allowed,
            system_prompt=self.system_prompt,
            model=self.model,
            context=dict(context or {}),
        )

    async def run(
        self,
        task: str,
        context: dict[str, Any] | None = None,
        capabilities: list[str] | None = None,
    ) -> AgentResult:
        return await self.runtime.execute(self.build_request(task, context, capabilities))
