from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from nightshift.state.store import StateStore
from nightshift.vcs.metadata import CommitRecord

logger = logging.getLogger(__name__)

MessageKind = Literal["request", "response", "handoff", "escalation"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class KnowledgeEntry:
    id: str
    project_id: str
    author: str
    kind: str
    content: str
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "author": self.author,
            "kind": self.kind,
            "content": self.content,
            "tags": list(self.tags),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> KnowledgeEntry:
        return cls(
            id=str(payload.get("id", "")),
            project_id=str(payload.get("project_id", "")),
            author=str(payload.get("author", "")),
            kind=str(payload.get("kind", "note")),
            content=str(payload.get("content", "")),
            tags=[str(tag) for tag in payload.get("tags", [])],
            created_at=str(payload.get("created_at", "")),
        )


@dataclass(slots=True)
class CollaborationMessage:
    sender: str
    recipient: str
    kind: MessageKind
    content: str
    project_id: str = ""
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.recipient,
            "kind": self.kind,
            "content": self.content,
            "project_id": self.project_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CollaborationMessage:
        return cls(
            sender=str(payload.get("from", "")),
            recipient=str(payload.get("to", "")),
            kind=payload.get("kind", "request"),
            content=str(payload.get("content", "")),
            project_id=str(payload.get("project_id", "")),
            timestamp=str(payload.get("timestamp", "")),
        )


@dataclass(slots=True)
class CodeIndexHandle:
    root: Path
    refreshed_at: str | None = None


@dataclass(slots=True)
class SharedContext:
    project_id: str
    recent_commits: list[CommitRecord] = field(default_factory=list)
    active_tasks: list[dict[str, Any]] = field(default_factory=list)
    code_index: CodeIndexHandle | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "recent_commits": [record.to_dict() for record in self.recent_commits],
            "active_tasks": list(self.active_tasks),
            "code_index": str(self.code_index.root) if self.code_index else None,
        }


class KnowledgeBase:
    """Append-only knowledge entries shared by every project of a factory."""

    NAMESPACE = "knowledge"

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def add(
        self,
        *,
        project_id: str,
        author: str,
        kind: str,
        content: str,
        tags: list[str] | None = None,
    ) -> KnowledgeEntry:
        entry = KnowledgeEntry(
            id=f"kb-{uuid4().hex[:10]}",
            project_id=project_id,
            author=author,
            kind=kind,
            content=content,
            tags=list(tags or []),
        )
        self.store.append(self.NAMESPACE, entry.to_dict())
        return entry

    def entries(self, project_id: str | None = None) -> list[KnowledgeEntry]:
        raw = self.store.get_json(self.NAMESPACE, default=[])
        entries = [KnowledgeEntry.from_dict(item) for item in raw if isinstance(item, dict)]
        if project_id is not None:
            entries = [entry for entry in entries if entry.project_id == project_id]
        return entries

    def search(
        self, query: str, *, project_id: str | None = None, limit: int = 10
    ) -> list[KnowledgeEntry]:
        terms = [term for term in query.lower().split() if term]
        if not terms:
            return []
        scored: list[tuple[int, int, KnowledgeEntry]] = []
        for index, entry in enumerate(self.entries(project_id)):
            haystack = f"{entry.content} {' '.join(entry.tags)} {entry.kind}".lower()
            score = sum(haystack.count(term) for term in terms)
            if score:
                scored.append((score, index, entry))
        scored.sort(key=lambda item: (-item[0], -item[1]))
        return [entry for _, _, entry in scored[:limit]]


class CollaborationLog:
    """Bounded, append-only record of agent-to-agent traffic."""

    NAMESPACE = "collaboration"

    def __init__(self, store: StateStore, *, max_entries: int = 1000, keep: int = 500) -> None:
        self.store = store
        self.max_entries = max_entries
        self.keep = min(keep, max_entries)

    def append(self, message: CollaborationMessage) -> None:
        size = self.store.append(
            self.NAMESPACE,
            message.to_dict(),
            max_items=self.max_entries,
            keep=self.keep,
        )
        logger.debug("Collaboration log size %d after %s", size, message.kind)

    def entries(self, project_id: str | None = None) -> list[CollaborationMessage]:
        raw = self.store.get_json(self.NAMESPACE, default=[])
        messages = [CollaborationMessage.from_dict(item) for item in raw if isinstance(item, dict)]
        if project_id is not None:
            messages = [message for message in messages if message.project_id == project_id]
        return messages

    def export_text(self) -> str:
        return json.dumps(
            [message.to_dict() for message in self.entries()], ensure_ascii=False, indent=2
        )

    def import_text(self, text: str) -> int:
        payload = json.loads(text)
        if not isinstance(payload, list):
            raise ValueError("Collaboration log export must be a JSON list.")
        messages = [CollaborationMessage.from_dict(item).to_dict() for item in payload]
        self.store.set_json(self.NAMESPACE, messages[-self.max_entries:])
        return min(len(messages), self.max_entries)
