from nightshift.providers.catalog import ModelOption, Tier, load_catalog
from nightshift.providers.costs import CostLedger, CostRecord, estimate_cost
from nightshift.providers.failover import FailoverRuntime, RetryPolicy
from nightshift.providers.selector import (
    ModelSelector,
    QuotaProber,
    QuotaStatus,
    RuntimeProber,
    SelectorState,
)

__all__ = [
    "CostLedger",
    "CostRecord",
    "FailoverRuntime",
    "ModelOption",
    "ModelSelector",
    "QuotaProber",
    "QuotaStatus",
    "RetryPolicy",
    "RuntimeProber",
    "SelectorState",
    "Tier",
    "estimate_cost",
    "load_catalog",
]
