"""Forward-prompt checkpoint: the recovery note an agent leaves for its successor.

The document is plain Markdown so humans can read it in the working copy::

    # Forward Prompt

    ## Objective

    Ship the login form

    ## Next Steps

    1. Wire the submit handler
    2. Add tests

    ---
    <!-- nightshift:forward-prompt v1
    {"agent_id": "coder_1", "session_id": "...", "updated_at": "..."}
    -->

Text lines that could be mistaken for structure are prefixed with a
backslash, and multi-line list items continue on lines indented by two
spaces, so every value survives a write/read cycle unchanged.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from nightshift.state.store import STATE_DIRNAME
from nightshift.vcs.metadata import CommitMetadata, CommitRecord
from nightshift.vcs.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

PROMPT_FILENAME = "forward-prompt.md"
PROMPT_RELATIVE_PATH = f"{STATE_DIRNAME}/{PROMPT_FILENAME}"
DOCUMENT_TITLE = "# Forward Prompt"
PLACEHOLDER = "_(unset)_"
TRAILER_RULE = "---"
METADATA_OPEN = "<!-- nightshift:forward-prompt v1"
METADATA_CLOSE = "-->"
ESCAPE = "\\"
CONTINUATION = "  "
STRUCTURAL_PREFIXES = (ESCAPE, "#", "<!--", "-->")
NUMBERED_ITEM = re.compile(r"^\d+\.(?: (.*))?$")
BULLET_ITEM = re.compile(r"^-(?: (.*))?$")

# (field name, heading, list marker or None for free text)
SECTIONS: tuple[tuple[str, str, str | None], ...] = (
    ("objective", "## Objective", None),
    ("current_status", "## Current Status", None),
    ("next_steps", "## Next Steps", "numbered"),
    ("blockers", "## Blockers", "bullet"),
    ("context_notes", "## Context Notes", None),
)
UPDATABLE_FIELDS = {name for name, _, _ in SECTIONS} | {"session_id", "agent_id"}


class ForwardPromptFormatError(ValueError):
    """Raised when a forward-prompt document cannot be parsed."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _encode_text(value: str) -> list[str]:
    if value == "":
        return [PLACEHOLDER]
    encoded = []
    for line in value.split("\n"):
        if line.startswith(STRUCTURAL_PREFIXES) or line in (TRAILER_RULE, PLACEHOLDER):
            line = ESCAPE + line
        encoded.append(line)
    return encoded


def _decode_text(lines: list[str]) -> str:
    if lines == [PLACEHOLDER]:
        return ""
    return "\n".join(line[1:] if line.startswith(ESCAPE) else line for line in lines)


def _encode_list(items: list[str], style: str) -> list[str]:
    if not items:
        return [PLACEHOLDER]
    encoded = []
    for index, item in enumerate(items, start=1):
        marker = f"{index}." if style == "numbered" else "-"
        first, *rest = item.split("\n")
        encoded.append(f"{marker} {first}" if first else marker)
        encoded.extend(CONTINUATION + line for line in rest)
    return encoded


def _decode_list(lines: list[str], style: str, heading: str) -> list[str]:
    if lines == [PLACEHOLDER]:
        return []
    pattern = NUMBERED_ITEM if style == "numbered" else BULLET_ITEM
    items: list[list[str]] = []
    for line in lines:
        match = pattern.match(line)
        if match is not None:
            items.append([match.group(1) or ""])
        elif line.startswith(CONTINUATION) and items:
            items[-1].append(line[len(CONTINUATION):])
        else:
            raise ForwardPromptFormatError(f"Unexpected line under {heading}: {line!r}")
    return ["\n".join(parts) for parts in items]


@dataclass(slots=True)
class ForwardPrompt:
    objective: str = ""
    current_status: str = ""
    next_steps: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    context_notes: str = ""
    session_id: str | None = None
    agent_id: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}

    @property
    def is_empty(self) -> bool:
        sections = (self.objective, self.current_status, self.context_notes)
        return not any(sections) and not self.next_steps and not self.blockers

    def to_text(self) -> str:
        lines = [DOCUMENT_TITLE, ""]
        for name, heading, style in SECTIONS:
            value = getattr(self, name)
            lines.extend([heading, ""])
            lines.extend(_encode_list(value, style) if style else _encode_text(value))
            lines.append("")
        meta = {
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "updated_at": self.updated_at,
        }
        lines.extend(
            [
                TRAILER_RULE,
                METADATA_OPEN,
                json.dumps(meta, ensure_ascii=False, sort_keys=True),
                METADATA_CLOSE,
            ]
        )
        return "\n".join(lines) + "\n"

    @classmethod
    def from_text(cls, text: str) -> ForwardPrompt:
        lines = text.split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        if len(lines) < 2 or lines[0] != DOCUMENT_TITLE or lines[1] != "":
            raise ForwardPromptFormatError("Missing forward prompt title.")

        try:
            trailer = lines.index(TRAILER_RULE)
        except ValueError as exc:
            raise ForwardPromptFormatError("Missing forward prompt trailer.") from exc
        if lines[trailer + 1 : trailer + 2] != [METADATA_OPEN] or lines[-1] != METADATA_CLOSE:
            raise ForwardPromptFormatError("Malformed forward prompt metadata block.")
        try:
            meta = json.loads("\n".join(lines[trailer + 2 : -1]))
        except json.JSONDecodeError as exc:
            raise ForwardPromptFormatError(f"Invalid forward prompt metadata: {exc}") from exc
        if not isinstance(meta, dict):
            raise ForwardPromptFormatError("Forward prompt metadata must be an object.")

        starts: list[int] = []
        cursor = 2
        for _, heading, _ in SECTIONS:
            try:
                index = lines.index(heading, cursor, trailer)
            except ValueError as exc:
                raise ForwardPromptFormatError(f"Missing section {heading}.") from exc
            starts.append(index)
            cursor = index + 1
        bounds = starts[1:] + [trailer]

        values: dict[str, Any] = {}
        for (name, heading, style), start, end in zip(SECTIONS, starts, bounds):
            if lines[start + 1] != "" or lines[end - 1] != "" or end - 1 < start + 2:
                raise ForwardPromptFormatError(f"Section {heading} is not properly delimited.")
            body = lines[start + 2 : end - 1]
            values[name] = _decode_list(body, style, heading) if style else _decode_text(body)

        return cls(
            **values,
            session_id=meta.get("session_id"),
            agent_id=meta.get("agent_id"),
            updated_at=meta.get("updated_at"),
        )

    def summary(self) -> str:
        objective = self.objective.split("\n", 1)[0] or "no objective"
        status = self.current_status.split("\n", 1)[0] or "no status"
        parts = [f"{objective} | {status}", f"{len(self.next_steps)} next step(s)"]
        if self.blockers:
            parts.append(f"{len(self.blockers)} blocker(s)")
        return ", ".join(parts)


class ForwardPromptStore:
    """Reads and writes the checkpoint file inside one working copy."""

    def __init__(self, worktree: Path) -> None:
        self.worktree = worktree
        self.path = worktree / STATE_DIRNAME / PROMPT_FILENAME

    def read(self) -> ForwardPrompt:
        if not self.path.exists():
            return ForwardPrompt()
        with self.path.open("r", encoding="utf-8", newline="") as handle:
            return ForwardPrompt.from_text(handle.read())

    def write(self, prompt: ForwardPrompt) -> ForwardPrompt:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".forward-prompt-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(prompt.to_text())
            os.replace(temp_name, self.path)
        except OSError:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise
        return prompt

    @staticmethod
    def _advance(previous: str | None) -> str:
        now = _utcnow_iso()
        if previous and now <= previous:
            try:
                return (datetime.fromisoformat(previous) + timedelta(seconds=1)).isoformat()
            except ValueError:
                return now
        return now

    def update(self, **changes: Any) -> ForwardPrompt:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown forward prompt fields: {', '.join(sorted(unknown))}")
        prompt = self.read()
        for name, value in changes.items():
            if name in {"next_steps", "blockers"}:
                value = [str(item) for item in value]
            setattr(prompt, name, value)
        prompt.updated_at = self._advance(prompt.updated_at)
        return self.write(prompt)

    def add_next_step(self, step: str) -> ForwardPrompt:
        return self.update(next_steps=[*self.read().next_steps, step])

    def complete_next_step(self) -> str | None:
        steps = self.read().next_steps
        if not steps:
            return None
        self.update(next_steps=steps[1:])
        return steps[0]

    def add_blocker(self, blocker: str) -> ForwardPrompt:
        blockers = self.read().blockers
        if blocker in blockers:
            return self.read()
        return self.update(blockers=[*blockers, blocker])

    def remove_blocker(self, blocker: str) -> bool:
        blockers = self.read().blockers
        if blocker not in blockers:
            return False
        self.update(blockers=[item for item in blockers if item != blocker])
        return True

    def summary(self) -> str:
        return self.read().summary()

    def commit(
        self,
        worktree_manager: WorktreeManager,
        *,
        title: str = "chore: update forward prompt",
        agent_id: str | None = None,
        session_id: str | None = None,
        extra_paths: list[str] | None = None,
    ) -> CommitRecord | None:
        prompt = self.read()
        paths = [PROMPT_RELATIVE_PATH, *(extra_paths or [])]
        metadata = CommitMetadata(
            intent="Checkpoint progress for the next session",
            expected_outcome="A fresh session can resume from the forward prompt",
            files_changed=paths,
            context_summary=prompt.summary(),
            agent_id=agent_id or prompt.agent_id or "",
            session_id=session_id or prompt.session_id or "",
        )
        record = worktree_manager.commit_with_metadata(
            self.worktree, title, metadata, paths=paths
        )
        if record is None:
            logger.debug("Forward prompt unchanged in %s", self.worktree)
        return record
