from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from nightshift.state.store import StateStore

# Committed beside the forward prompt so ledger verdicts travel with the branch.
SNAPSHOT_FILENAME = "nag-ledger.json"


class LedgerStatus(StrEnum):
    OK = "OK"
    NOK = "NOK"


@dataclass(slots=True)
class LedgerEntry:
    nag_id: str
    status: LedgerStatus
    updated_at: str
    updated_epoch: float
    source: str = "manual"
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "updated_at": self.updated_at,
            "updated_epoch": self.updated_epoch,
            "source": self.source,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, nag_id: str, payload: dict[str, Any]) -> LedgerEntry:
        return cls(
            nag_id=nag_id,
            status=LedgerStatus(payload.get("status", LedgerStatus.NOK)),
            updated_at=str(payload.get("updated_at", "")),
            updated_epoch=float(payload.get("updated_epoch", 0.0)),
            source=str(payload.get("source", "manual")),
            detail=str(payload.get("detail", "")),
        )


class NagStatusLedger:
    """Durable nag id -> OK/NOK map consulted by commit and push gates.

    Anything other than a fresh OK entry counts as failing.
    """

    NAMESPACE = "nag_status"

    def __init__(
        self,
        store: StateStore,
        *,
        max_age_seconds: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_age_seconds = max_age_seconds
        self.clock = clock

    def _entry(
        self, nag_id: str, status: LedgerStatus | str, source: str, detail: str
    ) -> LedgerEntry:
        now = self.clock()
        return LedgerEntry(
            nag_id=nag_id,
            status=LedgerStatus(status),
            updated_at=datetime.fromtimestamp(now, UTC).replace(microsecond=0).isoformat(),
            updated_epoch=now,
            source=source,
            detail=detail[:500],
        )

    def set(
        self,
        nag_id: str,
        status: LedgerStatus | str,
        *,
        source: str = "manual",
        detail: str = "",
    ) -> LedgerEntry:
        entry = self._entry(nag_id, status, source, detail)
        self.set_many([entry])
        return entry

    def set_many(self, entries: Iterable[LedgerEntry]) -> None:
        items = list(entries)

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {}
            for entry in items:
                data[entry.nag_id] = entry.to_dict()
            return data

        self.store.update_json(self.NAMESPACE, _updater, default={})

    def record(self, nag_id: str, passed: bool, *, source: str, detail: str = "") -> LedgerEntry:
        status = LedgerStatus.OK if passed else LedgerStatus.NOK
        return self._entry(nag_id, status, source, detail)

    def statuses(self) -> dict[str, LedgerEntry]:
        payload = self.store.get_json(self.NAMESPACE, default={})
        if not isinstance(payload, dict):
            return {}
        return {
            nag_id: LedgerEntry.from_dict(nag_id, item)
            for nag_id, item in payload.items()
            if isinstance(item, dict)
        }

    def get(self, nag_id: str) -> LedgerEntry | None:
        return self.statuses().get(nag_id)

    def is_stale(self, entry: LedgerEntry) -> bool:
        if self.max_age_seconds <= 0:
            return False
        return self.clock() - entry.updated_epoch > self.max_age_seconds

    def missing_or_failing(self, required_ids: Iterable[str]) -> list[str]:
        statuses = self.statuses()
        failing: list[str] = []
        for nag_id in required_ids:
            entry = statuses.get(nag_id)
            if entry is None or entry.status != LedgerStatus.OK or self.is_stale(entry):
                failing.append(nag_id)
        return failing

    def reset(self, nag_ids: Iterable[str] | None = None) -> None:
        targets = set(nag_ids) if nag_ids is not None else None

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {}
            if targets is None:
                return {}
            return {key: value for key, value in data.items() if key not in targets}

        self.store.update_json(self.NAMESPACE, _updater, default={})

    def export_text(self) -> str:
        return json.dumps(
            {nag_id: entry.to_dict() for nag_id, entry in sorted(self.statuses().items())},
            ensure_ascii=False,
            indent=2,
        )

    def import_text(self, text: str) -> int:
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("Ledger export must be a JSON object.")
        entries = {
            str(nag_id): LedgerEntry.from_dict(str(nag_id), item).to_dict()
            for nag_id, item in payload.items()
            if isinstance(item, dict)
        }
        self.store.set_json(self.NAMESPACE, entries)
        return len(entries)

    def write_snapshot(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.export_text() + "\n", encoding="utf-8")
        return path

    def restore_snapshot(self, path: Path) -> int:
        """Seed a never-written ledger from a committed snapshot, as in a fresh checkout."""
        if self.store.revision(self.NAMESPACE) > 0 or not path.exists():
            return 0
        return self.import_text(path.read_text(encoding="utf-8"))
