from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from nightshift.state.store import StateStore

DEFAULT_PRICE_KEY = "default"
TOKENS_PER_PRICE_UNIT = 1_000_000


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def price_for(model: str, prices: dict[str, dict[str, float]]) -> dict[str, float]:
    return prices.get(model) or prices.get(DEFAULT_PRICE_KEY) or {"prompt": 0.0, "completion": 0.0}


def estimate_cost(model: str, tokens: int, prices: dict[str, dict[str, float]]) -> float:
    """Blend prompt and completion prices, since runtimes report a single token total."""
    price = price_for(model, prices)
    blended = (float(price.get("prompt", 0.0)) + float(price.get("completion", 0.0))) / 2
    return max(tokens, 0) / TOKENS_PER_PRICE_UNIT * blended


@dataclass(slots=True)
class CostRecord:
    model: str
    tokens: int
    cost: float
    project_id: str | None = None
    recorded_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "tokens": self.tokens,
            "cost": self.cost,
            "project_id": self.project_id,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CostRecord:
        return cls(
            model=str(payload.get("model", "")),
            tokens=int(payload.get("tokens", 0)),
            cost=float(payload.get("cost", 0.0)),
            project_id=payload.get("project_id"),
            recorded_at=str(payload.get("recorded_at", "")),
        )


class CostLedger:
    NAMESPACE = "costs"

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def record(self, record: CostRecord) -> CostRecord:
        self.store.append(self.NAMESPACE, record.to_dict())
        return record

    def entries(self, project_id: str | None = None) -> list[CostRecord]:
        payload = self.store.get_json(self.NAMESPACE, default=[])
        records = [CostRecord.from_dict(item) for item in payload if isinstance(item, dict)]
        if project_id is not None:
            records = [record for record in records if record.project_id == project_id]
        return records

    def total_cost(self, project_id: str | None = None) -> float:
        return sum(record.cost for record in self.entries(project_id))

    def total_tokens(self, project_id: str | None = None) -> int:
        return sum(record.tokens for record in self.entries(project_id))

    def totals_by_model(self) -> dict[str, dict[str, float]]:
        totals: dict[str, dict[str, float]] = {}
        for record in self.entries():
            bucket = totals.setdefault(record.model, {"tokens": 0, "cost": 0.0})
            bucket["tokens"] += record.tokens
            bucket["cost"] += record.cost
        return totals
