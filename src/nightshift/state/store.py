from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".nightshift"


class StateStoreError(RuntimeError):
    """Raised when durable state operations fail."""


class ConcurrentUpdateError(StateStoreError):
    """Raised when a compare-and-swap write loses against another writer."""


class StateStore:
    """Revisioned JSON key/value store with atomic read-modify-write.

    Each namespace is one JSON file holding an envelope of
    ``{schema_version, revision, updated_at, data}``. Writers serialize on a
    lock file created with ``O_CREAT | O_EXCL`` so separate processes sharing
    the directory never lose updates.
    """

    NAMESPACES = {
        "tasks",
        "nags",
        "nag_status",
        "gate_reports",
        "projects",
        "leases",
        "collaboration",
        "knowledge",
        "costs",
        "metrics",
    }
    SCHEMA_VERSION = 1

    def __init__(
        self,
        state_dir: Path,
        *,
        lock_timeout_seconds: float = 10.0,
        stale_lock_seconds: float = 60.0,
    ) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / "state.lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self.stale_lock_seconds = stale_lock_seconds

    @classmethod
    def for_worktree(cls, worktree: Path) -> StateStore:
        return cls(worktree / STATE_DIRNAME / "state")

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _break_stale_lock(self) -> bool:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return True
        if age <= self.stale_lock_seconds:
            return False
        logger.warning("Breaking stale state lock %s (age %.1fs)", self.lock_file, age)
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        return True

    @contextmanager
    def _lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._break_stale_lock():
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", path)
            return None

    def _write_raw(self, namespace: str, envelope: dict[str, Any]) -> None:
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2, sort_keys=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{namespace}-", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized + "\n")
            os.replace(temp_name, self._file(namespace))
        except OSError:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if isinstance(raw_payload, dict) and {"revision", "data"} <= raw_payload.keys():
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 0),
                "updated_at": raw_payload.get("updated_at"),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": None,
            "data": copy.deepcopy(default) if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def revision(self, namespace: str) -> int:
        return int(self.get_envelope(namespace)["revision"])

    def _commit(self, namespace: str, current: dict[str, Any], data: Any) -> int:
        revision = int(current["revision"]) + 1
        self._write_raw(
            namespace,
            {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": self._utcnow_iso(),
                "data": data,
            },
        )
        return revision

    def set_json(
        self, namespace: str, data: Any, expected_revision: int | None = None
    ) -> int:
        self._validate_namespace(namespace)
        with self._lock():
            current = self.get_envelope(namespace)
            if expected_revision is not None and expected_revision != current["revision"]:
                raise ConcurrentUpdateError(
                    f"Concurrent state update detected for namespace '{namespace}' "
                    f"(expected revision {expected_revision}, found {current['revision']})."
                )
            return self._commit(namespace, current, data)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Apply ``updater`` to the current value while holding the store lock."""
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        with self._lock():
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(copy.deepcopy(current["data"]))
            self._commit(namespace, current, updated)
            return updated

    def append(self, namespace: str, item: Any, *, max_items: int = 0, keep: int = 0) -> int:
        """Append ``item`` to a list namespace, pruning oldest entries past ``max_items``."""

        def _updater(payload: Any) -> list[Any]:
            items = payload if isinstance(payload, list) else []
            items.append(item)
            if max_items and len(items) > max_items:
                items = items[-(keep or max_items):]
            return items

        return len(self.update_json(namespace, _updater, default=[]))

    def export_text(self, namespace: str) -> str:
        envelope = self.get_envelope(namespace)
        return json.dumps(envelope["data"], ensure_ascii=False, indent=2, sort_keys=True)

    def import_text(self, namespace: str, text: str) -> None:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Invalid {namespace} export: {exc}") from exc
        self.set_json(namespace, data)
