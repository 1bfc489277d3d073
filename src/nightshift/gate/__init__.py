from nightshift.gate.ledger import SNAPSHOT_FILENAME, LedgerEntry, LedgerStatus, NagStatusLedger
from nightshift.gate.nags import (
    DEFAULT_PROJECT_NAGS,
    Nag,
    NagDefinitionError,
    NagKind,
    NagOutcome,
    NagRegistry,
    NagReport,
    NagResult,
    NagStage,
    SuccessCriteria,
    detect_project_type,
)
from nightshift.gate.runner import GateBlockedError, GateDecision, QualityGate, parse_verdict

__all__ = [
    "DEFAULT_PROJECT_NAGS",
    "GateBlockedError",
    "GateDecision",
    "LedgerEntry",
    "LedgerStatus",
    "Nag",
    "NagDefinitionError",
    "NagKind",
    "NagOutcome",
    "NagRegistry",
    "NagReport",
    "NagResult",
    "NagStage",
    "NagStatusLedger",
    "QualityGate",
    "SNAPSHOT_FILENAME",
    "SuccessCriteria",
    "detect_project_type",
    "parse_verdict",
]
