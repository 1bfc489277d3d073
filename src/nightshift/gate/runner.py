from __future__ import annotations

import asyncio
import logging
import re
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nightshift.agents.roles import RoleAgent
from nightshift.agents.runtime import AgentExecutionError, AgentRuntime
from nightshift.config import GateConfig
from nightshift.gate.ledger import SNAPSHOT_FILENAME, LedgerStatus, NagStatusLedger
from nightshift.gate.nags import (
    Nag,
    NagKind,
    NagOutcome,
    NagRegistry,
    NagReport,
    NagResult,
    NagStage,
    SuccessCriteria,
)
from nightshift.state.store import STATE_DIRNAME, StateStore

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
VERDICT_PATTERN = re.compile(r"\b(NOK|OK)\b")
OUTPUT_LIMIT = 500
AGENT_NAG_CAPABILITIES = ["read_file", "search"]


class GateBlockedError(RuntimeError):
    """Raised when a blocking stage has required nags without a fresh OK."""

    def __init__(self, stage: str, missing: list[str]) -> None:
        super().__init__(f"{stage} gate blocked by: {', '.join(missing)}")
        self.stage = stage
        self.missing = list(missing)


@dataclass(slots=True)
class GateDecision:
    allowed: bool
    stage: NagStage
    required: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "stage": str(self.stage),
            "required": list(self.required),
            "missing": list(self.missing),
        }


def _tail(text: str) -> str:
    return text.strip()[-OUTPUT_LIMIT:]


def parse_verdict(reply: str) -> bool | None:
    match = VERDICT_PATTERN.search(reply)
    if match is None:
        return None
    return match.group(1) == "OK"


class QualityGate:
    """Runs nags for a stage and answers commit/push admission from the ledger."""

    def __init__(
        self,
        worktree: Path,
        *,
        store: StateStore | None = None,
        config: GateConfig | None = None,
        runtime: AgentRuntime | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.worktree = worktree
        self.store = store or StateStore.for_worktree(worktree)
        self.config = config or GateConfig()
        self.runtime = runtime
        self.registry = NagRegistry(self.store)
        self.ledger = NagStatusLedger(
            self.store, max_age_seconds=self.config.ledger_max_age_seconds, clock=clock
        )
        self.ledger.restore_snapshot(worktree / STATE_DIRNAME / SNAPSHOT_FILENAME)

    def _command_cwd(self, nag: Nag) -> Path:
        if not nag.working_directory:
            return self.worktree
        candidate = Path(nag.working_directory)
        return candidate if candidate.is_absolute() else self.worktree / candidate

    def run_tool_nag(self, nag: Nag) -> NagResult:
        command_text = (nag.command or "").strip()
        timeout = nag.timeout_seconds or self.config.default_timeout_seconds
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        started = time.monotonic()
        try:
            proc = subprocess.run(
                command_payload,
                cwd=self._command_cwd(nag),
                shell=used_shell,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return NagResult(
                nag_id=nag.id,
                status=NagOutcome.ERROR,
                message=f"Timed out after {timeout:g}s",
                duration_seconds=time.monotonic() - started,
            )
        except OSError as exc:
            return NagResult(
                nag_id=nag.id,
                status=NagOutcome.ERROR,
                message=f"Could not launch command: {exc}",
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        output = "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)
        if proc.returncode != 0:
            return NagResult(
                nag_id=nag.id,
                status=NagOutcome.FAILED,
                message=f"Exited with code {proc.returncode}",
                output=_tail(output),
                duration_seconds=duration,
            )

        expected = nag.expected_output or ""
        if nag.success_criteria == SuccessCriteria.OUTPUT_CONTAINS:
            passed = expected in output
            message = "Expected output found" if passed else f"Output lacks {expected!r}"
        elif nag.success_criteria == SuccessCriteria.OUTPUT_EXCLUDES:
            passed = expected not in output
            message = "Forbidden output absent" if passed else f"Output contains {expected!r}"
        else:
            passed = True
            message = "Exited with code 0"
        return NagResult(
            nag_id=nag.id,
            status=NagOutcome.PASSED if passed else NagOutcome.FAILED,
            message=message,
            output=_tail(output),
            duration_seconds=duration,
        )

    def _agent_prompt(self, nag: Nag, stage: NagStage) -> str:
        lines = [nag.prompt or "", ""]
        if nag.evaluation_criteria:
            lines.append("Evaluation criteria:")
            lines.extend(f"- {item}" for item in nag.evaluation_criteria)
            lines.append("")
        lines.append(
            f"This is the {stage} check '{nag.name or nag.id}'. "
            "Start your reply with OK if every criterion holds, otherwise NOK, then explain."
        )
        return "\n".join(lines)

    async def run_agent_nag(self, nag: Nag, stage: NagStage) -> NagResult:
        if self.runtime is None:
            return NagResult(
                nag_id=nag.id, status=NagOutcome.SKIPPED, message="No agent runtime configured"
            )
        started = time.monotonic()
        agent = RoleAgent(nag.agent_role, self.runtime)
        context = {"stage": str(stage), "nag_id": nag.id, "worktree": str(self.worktree)}
        try:
            result = await asyncio.wait_for(
                agent.run(self._agent_prompt(nag, stage), context, AGENT_NAG_CAPABILITIES),
                timeout=nag.timeout_seconds,
            )
        except TimeoutError:
            return NagResult(
                nag_id=nag.id,
                status=NagOutcome.ERROR,
                message=f"Agent evaluation timed out after {nag.timeout_seconds:g}s",
                duration_seconds=time.monotonic() - started,
            )
        except (AgentExecutionError, ValueError) as exc:
            logger.warning("Agent nag %s failed to evaluate: %s", nag.id, exc)
            return NagResult(
                nag_id=nag.id,
                status=NagOutcome.ERROR,
                message=f"Agent runtime error: {exc}",
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        verdict = parse_verdict(result.output) if result.success else None
        if verdict is None:
            return NagResult(
                nag_id=nag.id,
                status=NagOutcome.ERROR,
                message="Agent reply carried no OK/NOK verdict",
                output=_tail(result.output),
                duration_seconds=duration,
            )
        return NagResult(
            nag_id=nag.id,
            status=NagOutcome.PASSED if verdict else NagOutcome.FAILED,
            message="Agent verdict OK" if verdict else "Agent verdict NOK",
            output=_tail(result.output),
            duration_seconds=duration,
        )

    async def evaluate(self, nag: Nag, stage: NagStage) -> NagResult:
        if nag.kind == NagKind.AGENT:
            return await self.run_agent_nag(nag, stage)
        return await asyncio.to_thread(self.run_tool_nag, nag)

    async def run_stage(self, stage: NagStage | str) -> NagReport:
        gate_stage = NagStage(stage)
        nags = self.registry.list(gate_stage, enabled_only=True)
        results: list[NagResult] = []
        for nag in nags:
            result = await self.evaluate(nag, gate_stage)
            logger.info("Nag %s (%s): %s %s", nag.id, gate_stage, result.status, result.message)
            results.append(result)

        blocking_ids = {nag.id for nag in nags if nag.blocking}
        blocked = self.config.is_blocking(str(gate_stage)) and any(
            result.status == NagOutcome.FAILED and result.nag_id in blocking_ids
            for result in results
        )
        report = NagReport(stage=gate_stage, results=results, blocked=blocked)

        self.ledger.set_many(
            self.ledger.record(
                result.nag_id,
                result.status == NagOutcome.PASSED,
                source=f"gate:{gate_stage}",
                detail=result.message,
            )
            for result in results
        )
        self._record_report(report)
        logger.info(
            "Gate %s: %d passed, %d failed, %d skipped, %d errors%s",
            gate_stage,
            report.passed,
            report.failed,
            report.skipped,
            report.errors,
            " (blocked)" if blocked else "",
        )
        return report

    def _record_report(self, report: NagReport) -> None:
        limit = max(1, self.config.history_limit)
        payload = report.to_dict()
        payload["recorded_at"] = report.results[-1].evaluated_at if report.results else None
        self.store.append("gate_reports", payload, max_items=limit, keep=limit)

    def reports(self, limit: int = 10) -> list[dict[str, Any]]:
        history = self.store.get_json("gate_reports", default=[])
        if not isinstance(history, list):
            return []
        return history[-limit:]

    def required_nags(self, stage: NagStage | str) -> list[str]:
        gate_stage = NagStage(stage)
        if not self.config.is_blocking(str(gate_stage)):
            return []
        return [nag.id for nag in self.registry.list(gate_stage, enabled_only=True) if nag.blocking]

    def check(self, stage: NagStage | str) -> GateDecision:
        gate_stage = NagStage(stage)
        required = self.required_nags(gate_stage)
        missing = self.ledger.missing_or_failing(required)
        return GateDecision(
            allowed=not missing, stage=gate_stage, required=required, missing=missing
        )

    def enforce(self, stage: NagStage | str) -> GateDecision:
        decision = self.check(stage)
        if not decision.allowed:
            logger.warning("%s gate blocked by %s", decision.stage, ", ".join(decision.missing))
            raise GateBlockedError(str(decision.stage), decision.missing)
        return decision

    def set_status(
        self, nag_id: str, status: LedgerStatus | str, *, detail: str = ""
    ) -> None:
        self.ledger.set(nag_id, status, source="manual", detail=detail)
