from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from nightshift.config import ModelsConfig


class Tier(StrEnum):
    FAST = "FAST"
    THINKING = "THINKING"
    PREMIUM = "PREMIUM"


@dataclass(slots=True, frozen=True)
class ModelOption:
    id: str
    provider: str
    tier: Tier
    # Name handed to the runtime when it differs from the catalog id.
    model: str = ""

    @property
    def runtime_model(self) -> str:
        return self.model or self.id

    def to_dict(self) -> dict[str, str]:
        payload = {"id": self.id, "provider": self.provider, "tier": str(self.tier)}
        if self.model:
            payload["model"] = self.model
        return payload


def load_catalog(config: ModelsConfig) -> list[ModelOption]:
    options: list[ModelOption] = []
    seen: set[str] = set()
    for item in config.catalog:
        model_id = str(item["id"])
        if model_id in seen:
            raise ValueError(f"Duplicate model in catalog: {model_id}")
        seen.add(model_id)
        options.append(
            ModelOption(
                id=model_id,
                provider=str(item["provider"]),
                tier=Tier(str(item.get("tier", Tier.FAST)).upper()),
                model=str(item.get("model", "")),
            )
        )
    return options
