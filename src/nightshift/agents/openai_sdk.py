from __future__ import annotations

import asyncio
from typing import Any

from nightshift.agents.runtime import (
    AgentExecutionError,
    AgentRequest,
    AgentResult,
    AgentRuntime,
    QuotaCheck,
)


class OpenAIRuntime(AgentRuntime):
    """Runtime backed by the optional ``openai`` SDK (Responses API)."""

    name = "openai"
    providers = ("openai",)

    def __init__(self, *, model: str = "gpt-5-codex", client: Any | None = None) -> None:
        self.model = model
        self._client = client
        if self._client is None:
            try:
                from openai import OpenAI  # type: ignore

                self._client = OpenAI()
            except Exception:
                self._client = None

    @property
    def available(self) -> bool:
        return self._client is not None

    @staticmethod
    def _is_rate_limit(exc: Exception) -> bool:
        return type(exc).__name__ == "RateLimitError" or getattr(exc, "status_code", None) == 429

    @staticmethod
    def _extract_text(payload: Any) -> str:
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return ""

    @staticmethod
    def _extract_tokens(payload: Any) -> int:
        usage = getattr(payload, "usage", None)
        if usage is None and isinstance(payload, dict):
            usage = payload.get("usage")
        if isinstance(usage, dict):
            total = usage.get("total_tokens")
        else:
            total = getattr(usage, "total_tokens", None)
        return int(total) if isinstance(total, int) else 0

    def _require_client(self) -> Any:
        if self._client is None:
            raise AgentExecutionError(
                "The openai package is not installed or not configured.",
                runtime=self.name,
                retriable=False,
            )
        return self._client

    async def execute(self, request: AgentRequest) -> AgentResult:
        client = self._require_client()
        model_name = request.model or self.model
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.task})

        def _request() -> Any:
            return client.responses.create(model=model_name, input=messages)

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            raise AgentExecutionError(
                f"OpenAI execution failed: {exc}",
                runtime=self.name,
                retriable=True,
                rate_limited=self._is_rate_limit(exc),
                provider="openai",
            ) from exc

        content = self._extract_text(payload).strip()
        return AgentResult(
            success=bool(content),
            output=content,
            tokens_used=self._extract_tokens(payload),
            model=model_name,
        )

    async def check_quota(self, model: str) -> QuotaCheck:
        client = self._require_client()
        try:
            await asyncio.to_thread(client.models.retrieve, model)
        except Exception as exc:
            return QuotaCheck(
                model=model,
                available=False,
                error=str(exc),
                rate_limited=self._is_rate_limit(exc),
            )
        return QuotaCheck(model=model, available=True)
