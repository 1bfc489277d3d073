from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any

from nightshift.agents.runtime import (
    AgentExecutionError,
    AgentRequest,
    AgentResult,
    AgentRuntime,
)

CAPABILITY_TOOLS = {
    "read_file": "Read",
    "write_file": "Write",
    "edit_file": "Edit",
    "run_command": "Bash",
    "search": "Grep",
}
RATE_LIMIT_PATTERN = re.compile(r"rate[_ ]limit|usage limit|\b429\b|overloaded", re.IGNORECASE)


class ClaudeCodeRuntime(AgentRuntime):
    name = "claude"
    providers = ("anthropic",)

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "-p", request.task, "--output-format", "json"]
        if request.model:
            command.extend(["--model", request.model])
        if request.system_prompt:
            command.extend(["--append-system-prompt", request.system_prompt])
        tools = [
            CAPABILITY_TOOLS[item] for item in request.capabilities if item in CAPABILITY_TOOLS
        ]
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        return command

    @staticmethod
    def _tokens_from_usage(usage: Any) -> int:
        if not isinstance(usage, dict):
            return 0
        total = 0
        for key in (
            "input_tokens",
            "output_tokens",
            "cache_creation_input_tokens",
            "cache_read_input_tokens",
        ):
            value = usage.get(key)
            if isinstance(value, int):
                total += value
        return total

    def parse_output(self, raw: str, model: str | None) -> AgentResult:
        payload: dict[str, Any] | None = None
        for line in reversed(raw.strip().splitlines()):
            try:
                candidate = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(candidate, dict) and candidate.get("type") == "result":
                payload = candidate
                break
        if payload is None:
            return AgentResult(success=bool(raw.strip()), output=raw.strip(), model=model)
        output = str(payload.get("result") or "")
        if payload.get("is_error") and RATE_LIMIT_PATTERN.search(output):
            raise AgentExecutionError(
                f"Claude reported a rate limit: {output[:200]}",
                runtime=self.name,
                rate_limited=True,
                provider="anthropic",
            )
        return AgentResult(
            success=not payload.get("is_error", False),
            output=output,
            tokens_used=self._tokens_from_usage(payload.get("usage")),
            model=model,
            metadata={
                "session_id": payload.get("session_id"),
                "cost_usd": payload.get("total_cost_usd"),
            },
        )

    async def execute(self, request: AgentRequest) -> AgentResult:
        workdir = request.context.get("worktree") or self.working_directory
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(request),
                cwd=str(workdir) if workdir else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentExecutionError(
                f"Claude binary not found: {self.binary}",
                runtime=self.name,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise AgentExecutionError(
                f"Claude runtime failed with exit code {process.returncode}: {stderr_text}",
                runtime=self.name,
                exit_code=process.returncode,
                retriable=True,
                rate_limited=bool(RATE_LIMIT_PATTERN.search(stderr_text)),
                provider="anthropic",
            )
        return self.parse_output(stdout_text, request.model)
