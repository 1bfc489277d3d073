from nightshift.agents.claude import ClaudeCodeRuntime
from nightshift.agents.context import (
    CollaborationLog,
    CollaborationMessage,
    KnowledgeBase,
    KnowledgeEntry,
    SharedContext,
)
from nightshift.agents.coordinator import (
    NEXT_ROLES,
    AgentContext,
    AgentNotFoundError,
    HandoffBundle,
    MultiAgentCoordinator,
    SessionBusyError,
)
from nightshift.agents.openai_sdk import OpenAIRuntime
from nightshift.agents.roles import RoleAgent
from nightshift.agents.runtime import (
    AgentExecutionError,
    AgentRequest,
    AgentResult,
    AgentRuntime,
    AgentTimeoutError,
    QuotaCheck,
)

__all__ = [
    "AgentContext",
    "AgentExecutionError",
    "AgentNotFoundError",
    "AgentRequest",
    "AgentResult",
    "AgentRuntime",
    "AgentTimeoutError",
    "ClaudeCodeRuntime",
    "CollaborationLog",
    "CollaborationMessage",
    "HandoffBundle",
    "KnowledgeBase",
    "KnowledgeEntry",
    "MultiAgentCoordinator",
    "NEXT_ROLES",
    "OpenAIRuntime",
    "QuotaCheck",
    "RoleAgent",
    "SessionBusyError",
    "SharedContext",
]
