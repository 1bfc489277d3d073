from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from nightshift.state.store import StateStore

logger = logging.getLogger(__name__)


class NagStage(StrEnum):
    PRE_COMMIT = "pre-commit"
    PRE_PUSH = "pre-push"


class NagKind(StrEnum):
    TOOL = "tool"
    AGENT = "agent"


class SuccessCriteria(StrEnum):
    EXIT_CODE = "exit_code"
    OUTPUT_CONTAINS = "output_contains"
    OUTPUT_EXCLUDES = "output_excludes"


class NagOutcome(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class NagDefinitionError(ValueError):
    """Raised when a nag definition is incomplete for its kind."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Nag:
    id: str
    name: str = ""
    description: str = ""
    stage: NagStage = NagStage.PRE_COMMIT
    kind: NagKind = NagKind.TOOL
    blocking: bool = False
    enabled: bool = True
    command: str | None = None
    working_directory: str | None = None
    timeout_seconds: float | None = None
    success_criteria: SuccessCriteria = SuccessCriteria.EXIT_CODE
    expected_output: str | None = None
    prompt: str | None = None
    evaluation_criteria: list[str] = field(default_factory=list)
    agent_role: str = "reviewer"

    def validate(self) -> None:
        if not self.id.strip():
            raise NagDefinitionError("Nag id must not be empty.")
        if self.kind == NagKind.TOOL:
            if not (self.command or "").strip():
                raise NagDefinitionError(f"Tool nag {self.id} needs a command.")
            if self.success_criteria != SuccessCriteria.EXIT_CODE and not self.expected_output:
                raise NagDefinitionError(
                    f"Nag {self.id} uses {self.success_criteria} without expected_output."
                )
        elif not (self.prompt or "").strip():
            raise NagDefinitionError(f"Agent nag {self.id} needs an evaluation prompt.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "stage": str(self.stage),
            "kind": str(self.kind),
            "blocking": self.blocking,
            "enabled": self.enabled,
            "command": self.command,
            "working_directory": self.working_directory,
            "timeout_seconds": self.timeout_seconds,
            "success_criteria": str(self.success_criteria),
            "expected_output": self.expected_output,
            "prompt": self.prompt,
            "evaluation_criteria": list(self.evaluation_criteria),
            "agent_role": self.agent_role,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Nag:
        timeout = payload.get("timeout_seconds")
        nag = cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name") or payload.get("id", "")),
            description=str(payload.get("description", "")),
            stage=NagStage(payload.get("stage", NagStage.PRE_COMMIT)),
            kind=NagKind(payload.get("kind", NagKind.TOOL)),
            blocking=bool(payload.get("blocking", False)),
            enabled=bool(payload.get("enabled", True)),
            command=payload.get("command"),
            working_directory=payload.get("working_directory"),
            timeout_seconds=float(timeout) if timeout is not None else None,
            success_criteria=SuccessCriteria(
                payload.get("success_criteria", SuccessCriteria.EXIT_CODE)
            ),
            expected_output=payload.get("expected_output"),
            prompt=payload.get("prompt"),
            evaluation_criteria=[str(item) for item in payload.get("evaluation_criteria", [])],
            agent_role=str(payload.get("agent_role", "reviewer")),
        )
        nag.validate()
        return nag


@dataclass(slots=True)
class NagResult:
    nag_id: str
    status: NagOutcome
    message: str = ""
    output: str = ""
    duration_seconds: float = 0.0
    evaluated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nag_id": self.nag_id,
            "status": str(self.status),
            "message": self.message,
            "output": self.output,
            "duration_seconds": round(self.duration_seconds, 3),
            "evaluated_at": self.evaluated_at,
        }


@dataclass(slots=True)
class NagReport:
    stage: NagStage
    results: list[NagResult]
    blocked: bool

    def _count(self, outcome: NagOutcome) -> int:
        return sum(1 for result in self.results if result.status == outcome)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return self._count(NagOutcome.PASSED)

    @property
    def failed(self) -> int:
        return self._count(NagOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(NagOutcome.SKIPPED)

    @property
    def errors(self) -> int:
        return self._count(NagOutcome.ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": str(self.stage),
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "blocked": self.blocked,
            "results": [result.to_dict() for result in self.results],
        }


DEFAULT_PROJECT_NAGS: dict[str, list[dict[str, Any]]] = {
    "python": [
        {
            "id": "lint",
            "name": "Lint",
            "stage": "pre-commit",
            "command": "ruff check .",
            "blocking": False,
        },
        {
            "id": "tests",
            "name": "Tests",
            "stage": "pre-push",
            "command": "pytest -q",
            "timeout_seconds": 600.0,
            "blocking": True,
        },
    ],
    "node": [
        {
            "id": "build",
            "name": "Build",
            "stage": "pre-commit",
            "command": "npm run build",
            "timeout_seconds": 300.0,
            "blocking": True,
        },
        {
            "id": "tests",
            "name": "Tests",
            "stage": "pre-push",
            "command": "npm test",
            "timeout_seconds": 600.0,
            "blocking": True,
        },
    ],
    "rust": [
        {
            "id": "build",
            "name": "Build",
            "stage": "pre-commit",
            "command": "cargo build",
            "timeout_seconds": 600.0,
            "blocking": True,
        },
        {
            "id": "tests",
            "name": "Tests",
            "stage": "pre-push",
            "command": "cargo test",
            "timeout_seconds": 900.0,
            "blocking": True,
        },
    ],
    "go": [
        {
            "id": "vet",
            "name": "Vet",
            "stage": "pre-commit",
            "command": "go vet ./...",
            "blocking": False,
        },
        {
            "id": "tests",
            "name": "Tests",
            "stage": "pre-push",
            "command": "go test ./...",
            "timeout_seconds": 600.0,
            "blocking": True,
        },
    ],
    "generic": [
        {
            "id": "intent-review",
            "name": "Intent review",
            "stage": "pre-push",
            "kind": "agent",
            "prompt": "Review the branch diff against the forward prompt objective.",
            "evaluation_criteria": ["Changes match the stated objective", "No secrets committed"],
            "blocking": False,
        },
    ],
}


def detect_project_type(root: Path) -> str:
    if (root / "package.json").exists():
        return "node"
    if (root / "pyproject.toml").exists() or (root / "setup.py").exists():
        return "python"
    if (root / "Cargo.toml").exists():
        return "rust"
    if (root / "go.mod").exists():
        return "go"
    return "generic"


class NagRegistry:
    """Nag definitions for one working copy, stored alongside its ledger."""

    NAMESPACE = "nags"

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def _payload(self) -> dict[str, Any]:
        payload = self.store.get_json(self.NAMESPACE, default={"nags": []})
        return payload if isinstance(payload, dict) else {"nags": []}

    def list(
        self, stage: NagStage | str | None = None, *, enabled_only: bool = False
    ) -> list[Nag]:
        nags = [Nag.from_dict(item) for item in self._payload().get("nags", [])]
        if stage is not None:
            nags = [nag for nag in nags if nag.stage == NagStage(stage)]
        if enabled_only:
            nags = [nag for nag in nags if nag.enabled]
        return nags

    def get(self, nag_id: str) -> Nag | None:
        return next((nag for nag in self.list() if nag.id == nag_id), None)

    @property
    def project_type(self) -> str | None:
        return self._payload().get("project_type")

    def add(self, nag: Nag, *, replace: bool = False) -> Nag:
        nag.validate()

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {"nags": []}
            items = [item for item in data.get("nags", []) if item.get("id") != nag.id]
            if len(items) != len(data.get("nags", [])) and not replace:
                raise NagDefinitionError(f"Nag already exists: {nag.id}")
            items.append(nag.to_dict())
            data["nags"] = items
            return data

        self.store.update_json(self.NAMESPACE, _updater, default={"nags": []})
        return nag

    def update(self, nag_id: str, **changes: Any) -> Nag:
        current = self.get(nag_id)
        if current is None:
            raise NagDefinitionError(f"Unknown nag: {nag_id}")
        payload = current.to_dict()
        payload.update(changes)
        payload["id"] = nag_id
        return self.add(Nag.from_dict(payload), replace=True)

    def remove(self, nag_id: str) -> bool:
        removed = {"value": False}

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {"nags": []}
            items = data.get("nags", [])
            kept = [item for item in items if item.get("id") != nag_id]
            removed["value"] = len(kept) != len(items)
            data["nags"] = kept
            return data

        self.store.update_json(self.NAMESPACE, _updater, default={"nags": []})
        return removed["value"]

    def seed(self, definitions: list[dict[str, Any]]) -> int:
        nags = [Nag.from_dict(item) for item in definitions]
        for nag in nags:
            self.add(nag, replace=True)
        return len(nags)

    def apply_project_defaults(self, root: Path, project_type: str | None = None) -> list[Nag]:
        detected = project_type or detect_project_type(root)
        added: list[Nag] = []
        existing = {nag.id for nag in self.list()}
        for definition in DEFAULT_PROJECT_NAGS.get(detected, []):
            if definition["id"] in existing:
                continue
            added.append(self.add(Nag.from_dict(definition)))

        def _mark(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {"nags": []}
            data["project_type"] = detected
            return data

        self.store.update_json(self.NAMESPACE, _mark, default={"nags": []})
        logger.info("Applied %d default nags for %s project", len(added), detected)
        return added

    def export_text(self) -> str:
        return json.dumps(self._payload(), ensure_ascii=False, indent=2)

    def import_text(self, text: str) -> int:
        payload = json.loads(text)
        if not isinstance(payload, dict) or not isinstance(payload.get("nags"), list):
            raise NagDefinitionError("Nag export must be an object with a 'nags' list.")
        nags = [Nag.from_dict(item).to_dict() for item in payload["nags"]]
        self.store.set_json(
            self.NAMESPACE, {"project_type": payload.get("project_type"), "nags": nags}
        )
        return len(nags)
