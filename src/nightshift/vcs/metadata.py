"""Structured commit metadata embedded in commit messages.

A message is a single title line, an optional free-form body, and a trailing
fenced block::

    feat: add login form

    --- nightshift-metadata v1 ---
    {
      "intent": "...",
      ...
    }
    --- end nightshift-metadata ---

Fences are matched against whole lines after the title, so titles or JSON
string values that merely contain fence text never terminate the block.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

METADATA_VERSION = 1
BLOCK_START_PATTERN = re.compile(r"^--- nightshift-metadata v(\d+) ---$")
BLOCK_END = "--- end nightshift-metadata ---"


def block_start(version: int = METADATA_VERSION) -> str:
    return f"--- nightshift-metadata v{version} ---"


@dataclass(slots=True)
class CommitMetadata:
    intent: str = ""
    implementation_hint: str = ""
    expected_outcome: str = ""
    files_changed: list[str] = field(default_factory=list)
    context_summary: str = ""
    agent_id: str = ""
    session_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "implementation_hint": self.implementation_hint,
            "expected_outcome": self.expected_outcome,
            "files_changed": list(self.files_changed),
            "context_summary": self.context_summary,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CommitMetadata:
        files = payload.get("files_changed", [])
        return cls(
            intent=str(payload.get("intent", "")),
            implementation_hint=str(payload.get("implementation_hint", "")),
            expected_outcome=str(payload.get("expected_outcome", "")),
            files_changed=[str(item) for item in files] if isinstance(files, list) else [],
            context_summary=str(payload.get("context_summary", "")),
            agent_id=str(payload.get("agent_id", "")),
            session_id=str(payload.get("session_id", "")),
        )


@dataclass(slots=True)
class CommitRecord:
    commit_hash: str
    title: str
    metadata: CommitMetadata
    has_metadata: bool
    committed_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_hash": self.commit_hash,
            "title": self.title,
            "metadata": self.metadata.to_dict(),
            "has_metadata": self.has_metadata,
            "committed_at": self.committed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CommitRecord:
        metadata = payload.get("metadata")
        return cls(
            commit_hash=str(payload.get("commit_hash", "")),
            title=str(payload.get("title", "")),
            metadata=CommitMetadata.from_dict(metadata if isinstance(metadata, dict) else {}),
            has_metadata=bool(payload.get("has_metadata", False)),
            committed_at=str(payload.get("committed_at", "")),
        )


def normalize_title(title: str) -> str:
    return " ".join(title.split()) or "chore: update"


def render_message(title: str, metadata: CommitMetadata, body: str = "") -> str:
    lines = [normalize_title(title), ""]
    if body.strip():
        lines.extend([body.rstrip(), ""])
    lines.append(block_start())
    lines.append(json.dumps(metadata.to_dict(), ensure_ascii=False, indent=2, sort_keys=True))
    lines.append(BLOCK_END)
    return "\n".join(lines) + "\n"


def parse_message(message: str) -> tuple[str, CommitMetadata | None]:
    """Split a commit message into its title and embedded metadata, if any.

    The last complete block wins. Blocks of a newer, unknown version and
    blocks with malformed JSON are treated as absent.
    """
    # split("\n") rather than splitlines(): JSON values may hold U+2028 and friends.
    lines = message.split("\n")
    title = lines[0].strip() if lines else ""

    blocks: list[tuple[int, list[str]]] = []
    collecting: list[str] | None = None
    version = 0
    for raw_line in lines[1:]:
        line = raw_line.rstrip("\r")
        match = BLOCK_START_PATTERN.match(line.strip())
        if match:
            collecting = []
            version = int(match.group(1))
            continue
        if collecting is not None and line.strip() == BLOCK_END:
            blocks.append((version, collecting))
            collecting = None
            continue
        if collecting is not None:
            collecting.append(line)

    if not blocks:
        return title, None
    block_version, body = blocks[-1]
    if block_version > METADATA_VERSION:
        logger.debug("Ignoring commit metadata block with unknown version %s", block_version)
        return title, None
    try:
        payload = json.loads("\n".join(body))
    except json.JSONDecodeError:
        logger.debug("Ignoring malformed commit metadata block")
        return title, None
    if not isinstance(payload, dict):
        return title, None
    return title, CommitMetadata.from_dict(payload)


def placeholder_record(commit_hash: str, title: str, committed_at: str = "") -> CommitRecord:
    return CommitRecord(
        commit_hash=commit_hash,
        title=title,
        metadata=CommitMetadata(intent=title),
        has_metadata=False,
        committed_at=committed_at,
    )
