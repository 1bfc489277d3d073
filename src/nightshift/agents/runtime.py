from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class AgentExecutionError(RuntimeError):
    """Raised when the agent runtime fails to execute a request."""

    def __init__(
        self,
        message: str,
        *,
        runtime: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        rate_limited: bool = False,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.runtime = runtime
        self.exit_code = exit_code
        self.retriable = retriable
        self.rate_limited = rate_limited
        self.provider = provider


class AgentTimeoutError(AgentExecutionError):
    """Raised when agent execution exceeds its wall-clock budget."""


@dataclass(slots=True)
class AgentRequest:
    role: str
    task: str
    capabilities: list[str] = field(default_factory=list)
    system_prompt: str = ""
    model: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentResult:
    success: bool
    output: str
    tokens_used: int = 0
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QuotaCheck:
    model: str
    available: bool
    error: str | None = None
    rate_limited: bool = False


class AgentRuntime(ABC):
    """Opaque agent-execution collaborator: send a task, get back a result."""

    name = "runtime"
    # Provider groups whose catalog models this runtime can run; empty means any.
    providers: tuple[str, ...] = ()

    @abstractmethod
    async def execute(self, request: AgentRequest) -> AgentResult:
        """Run one agent task to completion."""

    async def check_quota(self, model: str) -> QuotaCheck:
        """Cheap capacity check that must not consume generation quota."""
        return QuotaCheck(model=model, available=True)
