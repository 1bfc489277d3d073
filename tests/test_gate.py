import asyncio
import sys
from pathlib import Path

import pytest

from nightshift.agents.runtime import AgentRequest, AgentResult, AgentRuntime
from nightshift.config import GateConfig
from nightshift.gate import (
    GateBlockedError,
    LedgerStatus,
    Nag,
    NagDefinitionError,
    NagOutcome,
    NagRegistry,
    NagStage,
    NagStatusLedger,
    QualityGate,
    SuccessCriteria,
    parse_verdict,
)
from nightshift.state.store import StateStore

PYTHON = f'"{sys.executable}"'


def _py(code: str) -> str:
    return f'{PYTHON} -c "{code}"'


class VerdictRuntime(AgentRuntime):
    name = "verdict"

    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.requests: list[AgentRequest] = []

    async def execute(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        return AgentResult(success=True, output=self.reply)


def _gate(tmp_path: Path, **kwargs) -> QualityGate:
    worktree = tmp_path / "wt"
    worktree.mkdir(exist_ok=True)
    return QualityGate(worktree, **kwargs)


def test_nag_definitions_are_validated() -> None:
    with pytest.raises(NagDefinitionError, match="needs a command"):
        Nag(id="build").validate()
    with pytest.raises(NagDefinitionError, match="needs an evaluation prompt"):
        Nag.from_dict({"id": "review", "kind": "agent"})
    with pytest.raises(NagDefinitionError, match="without expected_output"):
        Nag(id="x", command="true", success_criteria=SuccessCriteria.OUTPUT_CONTAINS).validate()

    nag = Nag.from_dict({"id": "build", "command": "make", "stage": "pre-push"})
    assert nag.name == "build"
    assert nag.stage == NagStage.PRE_PUSH


def test_tool_nag_outcomes(tmp_path: Path) -> None:
    gate = _gate(tmp_path)

    passed = gate.run_tool_nag(Nag(id="ok", command=_py("print('all good')")))
    failed = gate.run_tool_nag(Nag(id="bad", command=_py("raise SystemExit(3)")))
    contains = gate.run_tool_nag(
        Nag(
            id="contains",
            command=_py("print('3 warnings')"),
            success_criteria=SuccessCriteria.OUTPUT_CONTAINS,
            expected_output="0 warnings",
        )
    )
    excludes = gate.run_tool_nag(
        Nag(
            id="excludes",
            command=_py("print('clean')"),
            success_criteria=SuccessCriteria.OUTPUT_EXCLUDES,
            expected_output="TODO",
        )
    )
    slow = gate.run_tool_nag(
        Nag(id="slow", command=_py("__import__('time').sleep(5)"), timeout_seconds=0.2)
    )
    missing = gate.run_tool_nag(Nag(id="missing", command="nightshift-no-such-binary --check"))

    assert passed.status == NagOutcome.PASSED
    assert passed.output == "all good"
    assert failed.status == NagOutcome.FAILED
    assert failed.message == "Exited with code 3"
    assert contains.status == NagOutcome.FAILED
    assert excludes.status == NagOutcome.PASSED
    assert slow.status == NagOutcome.ERROR
    assert "Timed out" in slow.message
    assert missing.status == NagOutcome.ERROR


def test_run_stage_blocks_only_on_blocking_failures(tmp_path: Path) -> None:
    gate = _gate(tmp_path, config=GateConfig(pre_commit_blocking=True))
    gate.registry.add(Nag(id="lint", command=_py("raise SystemExit(1)"), blocking=False))
    gate.registry.add(Nag(id="build", command=_py("print('built')"), blocking=True))
    gate.registry.add(
        Nag(id="docs", command=_py("raise SystemExit(1)"), blocking=True, enabled=False)
    )

    report = asyncio.run(gate.run_stage("pre-commit"))

    assert report.blocked is False
    assert [result.nag_id for result in report.results] == ["lint", "build"]
    assert gate.ledger.get("lint").status == LedgerStatus.NOK
    assert gate.ledger.get("build").status == LedgerStatus.OK
    assert gate.ledger.get("build").source == "gate:pre-commit"
    assert gate.ledger.get("docs") is None
    assert gate.reports()[-1]["passed"] == 1

    gate.registry.update("build", command=_py("raise SystemExit(2)"))
    report = asyncio.run(gate.run_stage(NagStage.PRE_COMMIT))
    assert report.blocked is True
    assert report.failed == 2


def test_non_blocking_stage_never_blocks(tmp_path: Path) -> None:
    gate = _gate(tmp_path, config=GateConfig(pre_commit_blocking=False))
    gate.registry.add(Nag(id="build", command=_py("raise SystemExit(1)"), blocking=True))

    report = asyncio.run(gate.run_stage("pre-commit"))

    assert report.blocked is False
    assert gate.check("pre-commit").allowed is True


def test_check_is_default_deny_for_required_nags(tmp_path: Path) -> None:
    gate = _gate(tmp_path)
    gate.registry.add(Nag(id="tests", stage=NagStage.PRE_PUSH, command="pytest", blocking=True))
    gate.registry.add(Nag(id="style", stage=NagStage.PRE_PUSH, command="ruff"))

    decision = gate.check("pre-push")
    assert decision.allowed is False
    assert decision.required == ["tests"]
    assert decision.missing == ["tests"]
    with pytest.raises(GateBlockedError, match="tests"):
        gate.enforce("pre-push")

    gate.set_status("tests", "NOK")
    assert gate.check("pre-push").allowed is False

    gate.set_status("tests", LedgerStatus.OK, detail="ran by hand")
    assert gate.enforce("pre-push").allowed is True
    assert gate.ledger.get("tests").source == "manual"


def test_stale_ok_entries_count_as_failing(tmp_path: Path) -> None:
    now = [1_000_000.0]
    gate = _gate(
        tmp_path,
        config=GateConfig(ledger_max_age_seconds=60),
        clock=lambda: now[0],
    )
    gate.registry.add(Nag(id="tests", stage=NagStage.PRE_PUSH, command="pytest", blocking=True))
    gate.set_status("tests", "OK")

    assert gate.check("pre-push").allowed is True
    now[0] += 61
    assert gate.check("pre-push").missing == ["tests"]


def test_agent_nags_use_runtime_verdict(tmp_path: Path) -> None:
    approving = VerdictRuntime("OK - the diff matches the objective")
    gate = _gate(tmp_path, runtime=approving)
    nag = Nag(
        id="intent",
        kind="agent",
        stage=NagStage.PRE_PUSH,
        prompt="Does the change match the objective?",
        evaluation_criteria=["No secrets"],
    )

    result = asyncio.run(gate.evaluate(nag, NagStage.PRE_PUSH))
    assert result.status == NagOutcome.PASSED
    request = approving.requests[0]
    assert request.role == "reviewer"
    assert request.capabilities == ["read_file", "search"]
    assert "- No secrets" in request.task

    rejecting = _gate(tmp_path, runtime=VerdictRuntime("NOK: secrets committed"))
    assert asyncio.run(rejecting.evaluate(nag, NagStage.PRE_PUSH)).status == NagOutcome.FAILED

    vague = _gate(tmp_path, runtime=VerdictRuntime("Looks fine to me"))
    assert asyncio.run(vague.evaluate(nag, NagStage.PRE_PUSH)).status == NagOutcome.ERROR

    offline = _gate(tmp_path)
    assert asyncio.run(offline.evaluate(nag, NagStage.PRE_PUSH)).status == NagOutcome.SKIPPED


def test_parse_verdict() -> None:
    assert parse_verdict("OK") is True
    assert parse_verdict("Verdict: NOK because tests fail") is False
    assert parse_verdict("NOKIA is not a verdict") is None
    assert parse_verdict("") is None


def test_registry_management(tmp_path: Path) -> None:
    registry = NagRegistry(StateStore(tmp_path / "state"))
    registry.add(Nag(id="build", command="make"))

    with pytest.raises(NagDefinitionError, match="already exists"):
        registry.add(Nag(id="build", command="make all"))
    with pytest.raises(NagDefinitionError, match="Unknown nag"):
        registry.update("missing", blocking=True)

    updated = registry.update("build", blocking=True, stage="pre-push")
    assert updated.blocking is True
    assert [nag.id for nag in registry.list("pre-push")] == ["build"]
    assert registry.list("pre-commit") == []

    assert registry.remove("build") is True
    assert registry.remove("build") is False


def test_project_defaults_follow_detected_type(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n", encoding="utf-8")
    registry = NagRegistry(StateStore(tmp_path / "state"))
    registry.add(Nag(id="lint", command="flake8"))

    added = registry.apply_project_defaults(tmp_path)

    assert [nag.id for nag in added] == ["tests"]
    assert registry.project_type == "python"
    assert registry.get("lint").command == "flake8"

    copy = NagRegistry(StateStore(tmp_path / "copy"))
    assert copy.import_text(registry.export_text()) == 2
    assert copy.project_type == "python"
    with pytest.raises(NagDefinitionError):
        copy.import_text('{"nags": "nope"}')


def test_ledger_export_import(tmp_path: Path) -> None:
    ledger = NagStatusLedger(StateStore(tmp_path / "a"))
    ledger.set("build", "OK", source="gate:pre-commit")
    ledger.set("tests", "NOK", detail="x" * 600)

    copy = NagStatusLedger(StateStore(tmp_path / "b"))
    assert copy.import_text(ledger.export_text()) == 2
    assert copy.get("build").status == LedgerStatus.OK
    assert len(copy.get("tests").detail) == 500
    assert copy.missing_or_failing(["build", "tests", "lint"]) == ["tests", "lint"]

    copy.reset(["tests"])
    assert set(copy.statuses()) == {"build"}
    with pytest.raises(ValueError):
        copy.import_text("[]")


def test_gate_restores_committed_ledger_snapshot(tmp_path: Path) -> None:
    source = _gate(tmp_path)
    source.ledger.set("build", "OK", source="gate:pre-commit")
    snapshot = source.ledger.write_snapshot(tmp_path / "clone" / ".nightshift" / "nag-ledger.json")

    restored = QualityGate(tmp_path / "clone")

    assert restored.ledger.get("build").status == LedgerStatus.OK
    restored.ledger.set("build", "NOK")
    assert restored.ledger.restore_snapshot(snapshot) == 0
    assert QualityGate(tmp_path / "clone").ledger.get("build").status == LedgerStatus.NOK
