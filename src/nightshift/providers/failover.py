from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from nightshift.agents.runtime import (
    AgentExecutionError,
    AgentRequest,
    AgentResult,
    AgentRuntime,
    AgentTimeoutError,
    QuotaCheck,
)
from nightshift.providers.selector import ModelSelector, QuotaProber

RuntimeEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class FailoverRuntime(AgentRuntime):
    """Wraps a runtime with per-role model choice, timeout, retry and model failover."""

    name = "failover"

    def __init__(
        self,
        runtime: AgentRuntime,
        selector: ModelSelector,
        retry_policy: RetryPolicy | None = None,
        event_hook: RuntimeEventHook | None = None,
        *,
        prober: QuotaProber | None = None,
        project_id: str | None = None,
    ) -> None:
        self.runtime = runtime
        self.providers = runtime.providers
        self.selector = selector
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook
        self.prober = prober
        self.project_id = project_id

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _switch(self, model: str, tier: Any) -> str:
        if self.prober is not None:
            return await self.selector.switch_model(self.prober, model, tier)
        return self.selector.get_optimal_model(tier)

    async def execute(self, request: AgentRequest) -> AgentResult:
        tier = self.selector.tier_for_role(request.role)
        model = request.model or self.selector.get_optimal_model(tier)

        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "runtime_retry",
                        "model": model,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                result = await asyncio.wait_for(
                    self.runtime.execute(
                        dataclasses.replace(request, model=self.selector.runtime_model(model))
                    ),
                    timeout=self.retry_policy.timeout_seconds,
                )
            except TimeoutError:
                error = AgentTimeoutError(
                    f"Runtime request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                    runtime=self.runtime.name,
                )
                errors.append(f"{model}[{attempt}]: {error}")
                self._emit(
                    {
                        "event": "runtime_attempt_failed",
                        "model": model,
                        "attempt": attempt,
                        "error": str(error),
                        "retriable": True,
                    }
                )
                continue
            except AgentExecutionError as exc:
                errors.append(f"{model}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "runtime_attempt_failed",
                        "model": model,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                        "rate_limited": exc.rate_limited,
                    }
                )
                if exc.rate_limited:
                    provider = exc.provider or self.selector.provider_for(model)
                    if provider:
                        self.selector.mark_rate_limited(provider)
                    previous, model = model, await self._switch(model, tier)
                    self._emit({"event": "model_switched", "from": previous, "to": model})
                    continue
                if not exc.retriable:
                    break
                continue

            # Priced and reported by catalog id; the runtime may echo its own model name.
            used_model = model
            cost = self.selector.record_operation(
                used_model, result.tokens_used, project_id=self.project_id
            )
            result.model = used_model
            result.metadata["cost"] = cost.cost
            self._emit(
                {
                    "event": "runtime_success",
                    "model": used_model,
                    "attempt": attempt,
                    "tokens": result.tokens_used,
                    "cost": cost.cost,
                }
            )
            return result

        summary = "; ".join(errors[-6:])
        raise AgentExecutionError(
            f"All runtime attempts failed for {request.role}. {summary}",
            runtime=self.name,
            retriable=False,
        )

    async def check_quota(self, model: str) -> QuotaCheck:
        return await self.runtime.check_quota(model)
