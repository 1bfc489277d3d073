from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

RuntimeName = Literal["claude", "openai"]

CONFIG_FILENAME = "nightshift.toml"

DEFAULT_ROLE_TIERS: dict[str, str] = {
    "planner": "THINKING",
    "reviewer": "THINKING",
    "coder": "FAST",
    "tester": "FAST",
    "curator": "FAST",
}

# USD per one million tokens.
DEFAULT_PRICES: dict[str, dict[str, float]] = {
    "gemini-3-pro-high": {"prompt": 1.25, "completion": 3.75},
    "gemini-3-pro-low": {"prompt": 1.25, "completion": 3.75},
    "gemini-3-flash": {"prompt": 0.1, "completion": 0.3},
    "claude-sonnet-thinking": {"prompt": 3.0, "completion": 15.0},
    "claude-opus": {"prompt": 15.0, "completion": 75.0},
    "gpt-5": {"prompt": 1.25, "completion": 10.0},
    "gpt-5-mini": {"prompt": 0.25, "completion": 2.0},
    "default": {"prompt": 1.0, "completion": 3.0},
}

DEFAULT_CATALOG: list[dict[str, str]] = [
    {"id": "gemini-3-flash", "provider": "google", "tier": "FAST"},
    {"id": "gemini-3-pro-high", "provider": "google", "tier": "THINKING"},
    {
        "id": "claude-sonnet-thinking",
        "provider": "anthropic",
        "tier": "THINKING",
        "model": "sonnet",
    },
    {"id": "claude-opus", "provider": "anthropic", "tier": "PREMIUM", "model": "opus"},
    {"id": "gpt-5-mini", "provider": "openai", "tier": "FAST"},
    {"id": "gpt-5", "provider": "openai", "tier": "THINKING"},
]

DEFAULT_QUOTA_ERROR_MARKERS: dict[str, list[str]] = {
    "google": ["RESOURCE_EXHAUSTED", "quota"],
    "anthropic": ["rate_limit", "429"],
    "openai": ["rate_limit", "insufficient_quota", "429"],
}


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class IsolationConfig:
    base_branch: str = "main"
    branch_namespace: str = "ns/task"
    worktree_prefix: str = "worktree_ns_task_"
    install_hooks: bool = True


@dataclass(slots=True)
class CommitPolicyConfig:
    max_diff_lines: int = 200
    max_files_changed: int = 10
    max_minutes_since_commit: int = 30
    min_minutes_between_commits: int = 2


@dataclass(slots=True)
class GateConfig:
    pre_commit_blocking: bool = False
    pre_push_blocking: bool = True
    ledger_max_age_seconds: int = 0
    default_timeout_seconds: float = 60.0
    history_limit: int = 50

    def is_blocking(self, stage: str) -> bool:
        if stage == "pre-commit":
            return self.pre_commit_blocking
        if stage == "pre-push":
            return self.pre_push_blocking
        return False


@dataclass(slots=True)
class AgentsConfig:
    runtime: RuntimeName = "claude"
    binary: str = "claude"
    session_timeout_seconds: float = 43200.0
    collaboration_log_max: int = 1000
    collaboration_log_keep: int = 500
    handoff_commit_limit: int = 5
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class ModelsConfig:
    default_model: str = "gemini-3-flash"
    probe_interval_seconds: float = 60.0
    role_tiers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ROLE_TIERS))
    prices: dict[str, dict[str, float]] = field(
        default_factory=lambda: {key: dict(value) for key, value in DEFAULT_PRICES.items()}
    )
    catalog: list[dict[str, str]] = field(
        default_factory=lambda: [dict(item) for item in DEFAULT_CATALOG]
    )
    quota_error_markers: dict[str, list[str]] = field(
        default_factory=lambda: {
            key: list(value) for key, value in DEFAULT_QUOTA_ERROR_MARKERS.items()
        }
    )


@dataclass(slots=True)
class TasksConfig:
    exploration_confidence_threshold: float = 0.6
    max_exploration_branches: int = 3
    long_running_task_seconds: float = 3600.0


@dataclass(slots=True)
class BudgetConfig:
    limit_usd: float = 100.0


@dataclass(slots=True)
class FactoryConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    isolation: IsolationConfig = field(default_factory=IsolationConfig)
    commit_policy: CommitPolicyConfig = field(default_factory=CommitPolicyConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    nags: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def default(cls) -> FactoryConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FactoryConfig:
        nags = data.get("nags", [])
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            isolation=IsolationConfig(**data.get("isolation", {})),
            commit_policy=CommitPolicyConfig(**data.get("commit_policy", {})),
            gate=GateConfig(**data.get("gate", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            models=ModelsConfig(**data.get("models", {})),
            tasks=TasksConfig(**data.get("tasks", {})),
            budget=BudgetConfig(**data.get("budget", {})),
            nags=[dict(item) for item in nags if isinstance(item, dict)],
        )

    def to_dict(self) -> dict:
        return {
            "project": {"name": self.project.name},
            "isolation": {
                "base_branch": self.isolation.base_branch,
                "branch_namespace": self.isolation.branch_namespace,
                "worktree_prefix": self.isolation.worktree_prefix,
                "install_hooks": self.isolation.install_hooks,
            },
            "commit_policy": {
                "max_diff_lines": self.commit_policy.max_diff_lines,
                "max_files_changed": self.commit_policy.max_files_changed,
                "max_minutes_since_commit": self.commit_policy.max_minutes_since_commit,
                "min_minutes_between_commits": self.commit_policy.min_minutes_between_commits,
            },
            "gate": {
                "pre_commit_blocking": self.gate.pre_commit_blocking,
                "pre_push_blocking": self.gate.pre_push_blocking,
                "ledger_max_age_seconds": self.gate.ledger_max_age_seconds,
                "default_timeout_seconds": self.gate.default_timeout_seconds,
                "history_limit": self.gate.history_limit,
            },
            "agents": {
                "runtime": self.agents.runtime,
                "binary": self.agents.binary,
                "session_timeout_seconds": self.agents.session_timeout_seconds,
                "collaboration_log_max": self.agents.collaboration_log_max,
                "collaboration_log_keep": self.agents.collaboration_log_keep,
                "handoff_commit_limit": self.agents.handoff_commit_limit,
                "max_retries": self.agents.max_retries,
                "retry_backoff_seconds": self.agents.retry_backoff_seconds,
            },
            "models": {
                "default_model": self.models.default_model,
                "probe_interval_seconds": self.models.probe_interval_seconds,
                "role_tiers": dict(self.models.role_tiers),
                "prices": {key: dict(value) for key, value in self.models.prices.items()},
                "catalog": [dict(item) for item in self.models.catalog],
                "quota_error_markers": {
                    key: list(value) for key, value in self.models.quota_error_markers.items()
                },
            },
            "tasks": {
                "exploration_confidence_threshold": self.tasks.exploration_confidence_threshold,
                "max_exploration_branches": self.tasks.max_exploration_branches,
                "long_running_task_seconds": self.tasks.long_running_task_seconds,
            },
            "budget": {"limit_usd": self.budget.limit_usd},
            "nags": [dict(item) for item in self.nags],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = ", ".join(
            f"{json.dumps(str(key), ensure_ascii=False)} = {_toml_value(item)}"
            for key, item in value.items()
        )
        return "{ " + items + " }"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FactoryConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "isolation",
        "commit_policy",
        "gate",
        "agents",
        "models",
        "tasks",
        "budget",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for nag in data["nags"]:
        lines.append("[[nags]]")
        for key, value in nag.items():
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FactoryConfig:
    if not path.exists():
        return FactoryConfig.default()
    return FactoryConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FactoryConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
