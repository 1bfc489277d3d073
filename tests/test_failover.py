import asyncio
from pathlib import Path

import pytest

from nightshift.agents.claude import ClaudeCodeRuntime
from nightshift.agents.openai_sdk import OpenAIRuntime
from nightshift.agents.runtime import (
    AgentExecutionError,
    AgentRequest,
    AgentResult,
    AgentRuntime,
)
from nightshift.config import FactoryConfig, ModelsConfig
from nightshift.providers import (
    CostLedger,
    FailoverRuntime,
    ModelSelector,
    RetryPolicy,
    Tier,
)
from nightshift.state.store import StateStore


class ScriptedRuntime(AgentRuntime):
    name = "scripted"

    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.models: list[str | None] = []

    async def execute(self, request: AgentRequest) -> AgentResult:
        self.models.append(request.model)
        outcome = self.outcomes.pop(0) if self.outcomes else "done"
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "hang":
            await asyncio.sleep(5)
        return AgentResult(success=True, output=str(outcome), tokens_used=1_000_000)


def _selector(tmp_path: Path) -> ModelSelector:
    config = ModelsConfig(
        default_model="flash",
        role_tiers={"coder": "THINKING"},
        prices={"default": {"prompt": 1.0, "completion": 1.0}},
        catalog=[
            {"id": "flash", "provider": "google", "tier": "FAST"},
            {"id": "sonnet", "provider": "anthropic", "tier": "THINKING"},
        ],
        quota_error_markers={},
    )
    return ModelSelector(config, ledger=CostLedger(StateStore(tmp_path / "state")))


def _failover(tmp_path: Path, runtime: AgentRuntime, events: list, **policy) -> FailoverRuntime:
    values = {"max_retries": 1, "backoff_seconds": 0.0, "timeout_seconds": 2.0}
    values.update(policy)
    return FailoverRuntime(
        runtime,
        _selector(tmp_path),
        RetryPolicy(**values),
        event_hook=events.append,
        project_id="p1",
    )


def test_success_records_cost_and_emits_event(tmp_path: Path) -> None:
    events: list[dict] = []
    runtime = ScriptedRuntime(["patched"])
    failover = _failover(tmp_path, runtime, events)

    result = asyncio.run(failover.execute(AgentRequest(role="coder", task="fix")))

    assert runtime.models == ["sonnet"]
    assert result.model == "sonnet"
    assert result.metadata["cost"] == pytest.approx(1.0)
    assert failover.selector.total_cost("p1") == pytest.approx(1.0)
    assert events[-1]["event"] == "runtime_success"
    assert events[-1]["attempt"] == 0


def test_explicit_model_is_respected(tmp_path: Path) -> None:
    runtime = ScriptedRuntime(["ok"])
    failover = _failover(tmp_path, runtime, [])

    asyncio.run(failover.execute(AgentRequest(role="coder", task="fix", model="flash")))

    assert runtime.models == ["flash"]


def test_rate_limit_marks_provider_and_switches_model(tmp_path: Path) -> None:
    events: list[dict] = []
    runtime = ScriptedRuntime(
        [
            AgentExecutionError("429", rate_limited=True, provider="anthropic"),
            "recovered",
        ]
    )
    failover = _failover(tmp_path, runtime, events)

    result = asyncio.run(failover.execute(AgentRequest(role="coder", task="fix")))

    assert runtime.models == ["sonnet", "flash"]
    assert result.output == "recovered"
    assert "anthropic" in failover.selector.state.rate_limited
    switched = [event for event in events if event["event"] == "model_switched"]
    assert switched == [{"event": "model_switched", "from": "sonnet", "to": "flash"}]


def test_non_retriable_error_stops_after_one_attempt(tmp_path: Path) -> None:
    runtime = ScriptedRuntime([AgentExecutionError("bad auth", retriable=False)])
    failover = _failover(tmp_path, runtime, [], max_retries=3)

    with pytest.raises(AgentExecutionError, match="bad auth") as excinfo:
        asyncio.run(failover.execute(AgentRequest(role="coder", task="fix")))

    assert excinfo.value.retriable is False
    assert len(runtime.models) == 1


def test_retries_are_bounded(tmp_path: Path) -> None:
    events: list[dict] = []
    runtime = ScriptedRuntime([AgentExecutionError(f"flaky {n}") for n in range(5)])
    failover = _failover(tmp_path, runtime, events, max_retries=2)

    with pytest.raises(AgentExecutionError, match="All runtime attempts failed for coder"):
        asyncio.run(failover.execute(AgentRequest(role="coder", task="fix")))

    assert len(runtime.models) == 3
    assert [event["attempt"] for event in events if event["event"] == "runtime_retry"] == [1, 2]


def test_timeout_counts_as_failed_attempt(tmp_path: Path) -> None:
    events: list[dict] = []
    runtime = ScriptedRuntime(["hang"])
    failover = _failover(tmp_path, runtime, events, max_retries=0, timeout_seconds=0.05)

    with pytest.raises(AgentExecutionError, match="timed out"):
        asyncio.run(failover.execute(AgentRequest(role="coder", task="fix")))

    assert events[-1]["event"] == "runtime_attempt_failed"
    assert events[-1]["retriable"] is True


class CapturingClaudeRuntime(ClaudeCodeRuntime):
    def __init__(self) -> None:
        super().__init__(binary="claude")
        self.commands: list[list[str]] = []

    async def execute(self, request: AgentRequest) -> AgentResult:
        self.commands.append(self.build_command(request))
        return AgentResult(success=True, output="ok", tokens_used=1_000_000, model=request.model)


def test_default_catalog_only_routes_served_models_to_the_runtime(tmp_path: Path) -> None:
    runtime = CapturingClaudeRuntime()
    selector = ModelSelector(
        FactoryConfig.default().models,
        ledger=CostLedger(StateStore(tmp_path / "state")),
        providers=runtime.providers,
    )
    failover = FailoverRuntime(runtime, selector, RetryPolicy(backoff_seconds=0.0))

    result = asyncio.run(failover.execute(AgentRequest(role="coder", task="x")))

    assert {option.provider for option in selector.catalog} == {"anthropic"}
    assert selector.default_model == "claude-sonnet-thinking"
    assert runtime.commands[0][-2:] == ["--model", "sonnet"]
    assert result.model == "claude-sonnet-thinking"
    assert result.metadata["cost"] == pytest.approx(9.0)

    selector.mark_rate_limited("anthropic")
    assert selector.get_optimal_model(Tier.FAST) == "claude-sonnet-thinking"


def test_openai_runtime_gets_openai_models_only() -> None:
    selector = ModelSelector(FactoryConfig.default().models, providers=OpenAIRuntime.providers)

    assert selector.get_optimal_model(selector.tier_for_role("coder")) == "gpt-5-mini"
    assert selector.get_optimal_model(selector.tier_for_role("planner")) == "gpt-5"
    with pytest.raises(ValueError, match="No catalog model is served"):
        ModelSelector(FactoryConfig.default().models, providers=("mistral",))
