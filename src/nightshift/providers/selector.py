from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection
import dataclasses
from dataclasses import dataclass, field

from nightshift.agents.runtime import (
    AgentExecutionError,
    AgentRequest,
    AgentRuntime,
    QuotaCheck,
)
from nightshift.config import ModelsConfig
from nightshift.providers.catalog import ModelOption, Tier, load_catalog
from nightshift.providers.costs import CostLedger, CostRecord, estimate_cost

logger = logging.getLogger(__name__)

LIVENESS_PROMPT = "Reply with OK."
LIVENESS_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class QuotaStatus:
    available: bool
    checked_at: float
    error: str | None = None


@dataclass(slots=True)
class SelectorState:
    """Mutable selector memory, owned by one selector instance."""

    rate_limited: set[str] = field(default_factory=set)
    quota: dict[str, QuotaStatus] = field(default_factory=dict)
    last_probe_at: float | None = None


class QuotaProber(ABC):
    @abstractmethod
    async def probe(self, models: list[ModelOption], *, liveness: bool) -> list[QuotaCheck]:
        """Check capacity for ``models``; liveness probes spend real generation quota."""


class RuntimeProber(QuotaProber):
    """Probes through the agent runtime: quota via ``check_quota``, liveness via a tiny prompt."""

    def __init__(
        self, runtime: AgentRuntime, *, liveness_timeout: float = LIVENESS_TIMEOUT_SECONDS
    ) -> None:
        self.runtime = runtime
        self.liveness_timeout = liveness_timeout

    async def _check_liveness(self, model: str) -> QuotaCheck:
        request = AgentRequest(role="reviewer", task=LIVENESS_PROMPT, model=model)
        try:
            result = await asyncio.wait_for(
                self.runtime.execute(request), timeout=self.liveness_timeout
            )
        except TimeoutError:
            return QuotaCheck(model=model, available=False, error="liveness probe timed out")
        except AgentExecutionError as exc:
            return QuotaCheck(
                model=model, available=False, error=str(exc), rate_limited=exc.rate_limited
            )
        if not result.success or not result.output.strip():
            return QuotaCheck(model=model, available=False, error="empty liveness reply")
        return QuotaCheck(model=model, available=True)

    async def _check_quota(self, model: str) -> QuotaCheck:
        try:
            return await self.runtime.check_quota(model)
        except AgentExecutionError as exc:
            return QuotaCheck(
                model=model, available=False, error=str(exc), rate_limited=exc.rate_limited
            )

    async def _check(self, option: ModelOption, liveness: bool) -> QuotaCheck:
        check = self._check_liveness if liveness else self._check_quota
        result = await check(option.runtime_model)
        return dataclasses.replace(result, model=option.id)

    async def probe(self, models: list[ModelOption], *, liveness: bool) -> list[QuotaCheck]:
        return list(await asyncio.gather(*(self._check(option, liveness) for option in models)))


class ModelSelector:
    """Chooses a model per tier under rate-limit and quota pressure.

    Selection never fails: when every provider group is rate-limited the
    memory is reset optimistically and the configured default model is used.
    """

    def __init__(
        self,
        config: ModelsConfig | None = None,
        state: SelectorState | None = None,
        clock: Callable[[], float] = time.time,
        *,
        ledger: CostLedger | None = None,
        providers: Collection[str] | None = None,
    ) -> None:
        self.config = config or ModelsConfig()
        self.state = state or SelectorState()
        self.clock = clock
        self.ledger = ledger
        catalog = load_catalog(self.config)
        if providers:
            served = set(providers)
            catalog = [option for option in catalog if option.provider in served]
            if not catalog:
                raise ValueError(f"No catalog model is served by: {', '.join(sorted(served))}")
        self.catalog = catalog
        self.default_model = self._resolve_default_model()

    def _resolve_default_model(self) -> str:
        if not self.catalog or self.option(self.config.default_model) is not None:
            return self.config.default_model
        fallback = next(
            (option for option in self.catalog if option.tier == Tier.FAST), self.catalog[0]
        )
        logger.info(
            "Default model %s is not served here; using %s",
            self.config.default_model,
            fallback.id,
        )
        return fallback.id

    def option(self, model_id: str) -> ModelOption | None:
        return next((option for option in self.catalog if option.id == model_id), None)

    def provider_for(self, model_id: str) -> str | None:
        option = self.option(model_id)
        return option.provider if option else None

    def runtime_model(self, model_id: str) -> str:
        option = self.option(model_id)
        return option.runtime_model if option else model_id

    def tier_for_role(self, role: str, confused: bool = False) -> Tier:
        if confused:
            return Tier.PREMIUM
        return Tier(self.config.role_tiers.get(str(role), Tier.FAST).upper())

    def _quota_known_unavailable(self, model_id: str) -> bool:
        status = self.state.quota.get(model_id)
        return status is not None and not status.available

    def _select(self, tier: Tier, exclude: set[str]) -> str | None:
        candidates = [
            option
            for option in self.catalog
            if option.provider not in self.state.rate_limited and option.id not in exclude
        ]
        if not candidates:
            return None
        # Same tier first, then models whose last quota probe succeeded.
        candidates.sort(
            key=lambda option: (option.tier != tier, self._quota_known_unavailable(option.id))
        )
        return candidates[0].id

    def get_optimal_model(self, tier: Tier | str = Tier.FAST) -> str:
        selected = self._select(Tier(tier), set())
        if selected is not None:
            return selected
        logger.warning(
            "Every provider group is rate-limited (%s); resetting and using %s",
            ", ".join(sorted(self.state.rate_limited)) or "none",
            self.default_model,
        )
        self.state.rate_limited.clear()
        return self.default_model

    def mark_rate_limited(self, provider: str) -> None:
        if provider not in self.state.rate_limited:
            logger.info("Provider %s marked rate-limited", provider)
        self.state.rate_limited.add(provider)

    def clear_rate_limits(self) -> None:
        self.state.rate_limited.clear()

    def _is_exhaustion(self, provider: str, check: QuotaCheck) -> bool:
        if check.rate_limited:
            return True
        markers = self.config.quota_error_markers.get(provider) or []
        if not markers:
            return True
        error = (check.error or "").lower()
        return any(marker.lower() in error for marker in markers)

    def update_quota_status(self, results: list[QuotaCheck]) -> None:
        now = self.clock()
        for check in results:
            self.state.quota[check.model] = QuotaStatus(
                available=check.available, checked_at=now, error=check.error
            )
            provider = self.provider_for(check.model)
            if provider is None:
                continue
            if check.available:
                if provider in self.state.rate_limited:
                    logger.info("Provider %s has capacity again", provider)
                    self.state.rate_limited.discard(provider)
            elif self._is_exhaustion(provider, check):
                self.mark_rate_limited(provider)
            else:
                logger.debug("Transient quota failure for %s: %s", check.model, check.error)

    def available_models(self) -> list[str]:
        return [
            option.id
            for option in self.catalog
            if option.provider not in self.state.rate_limited
            and not self._quota_known_unavailable(option.id)
        ]

    def exhausted_models(self) -> list[str]:
        available = set(self.available_models())
        return [option.id for option in self.catalog if option.id not in available]

    def should_probe(self) -> bool:
        if self.state.last_probe_at is None:
            return True
        return self.clock() - self.state.last_probe_at >= self.config.probe_interval_seconds

    async def probe_quota(self, prober: QuotaProber, force: bool = False) -> list[QuotaCheck]:
        if not force and not self.should_probe():
            return []
        self.state.last_probe_at = self.clock()
        results = await prober.probe(self.catalog, liveness=False)
        self.update_quota_status(results)
        return results

    async def probe_liveness(
        self, prober: QuotaProber, models: list[str] | None = None
    ) -> list[QuotaCheck]:
        targets = [
            option for option in self.catalog if models is None or option.id in models
        ]
        results = await prober.probe(targets, liveness=True)
        self.update_quota_status(results)
        return results

    async def switch_model(
        self, prober: QuotaProber, current: str | None, tier: Tier | str = Tier.FAST
    ) -> str:
        """Pick the best model for ``tier``, liveness-checking it only if it differs."""
        target_tier = Tier(tier)
        rejected: set[str] = set()
        for _ in range(len(self.catalog)):
            candidate = self._select(target_tier, rejected)
            if candidate is None:
                break
            if candidate == current:
                return candidate
            results = await self.probe_liveness(prober, [candidate])
            if results and all(check.available for check in results):
                logger.info("Switching model %s -> %s", current or "-", candidate)
                return candidate
            rejected.add(candidate)
        return self.get_optimal_model(target_tier)

    def cost_of(self, model: str, tokens: int) -> float:
        return estimate_cost(model, tokens, self.config.prices)

    def record_operation(
        self, model: str, tokens: int, *, project_id: str | None = None
    ) -> CostRecord:
        record = CostRecord(
            model=model, tokens=tokens, cost=self.cost_of(model, tokens), project_id=project_id
        )
        if self.ledger is not None:
            self.ledger.record(record)
        return record

    def total_cost(self, project_id: str | None = None) -> float:
        return self.ledger.total_cost(project_id) if self.ledger else 0.0

    def totals_by_model(self) -> dict[str, dict[str, float]]:
        return self.ledger.totals_by_model() if self.ledger else {}
