import json
import os
import threading
import time
from pathlib import Path

import pytest

from nightshift.state.store import ConcurrentUpdateError, StateStore, StateStoreError


def test_state_store_roundtrip(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    payload = {"p1": {"name": "auth", "status": "active"}}
    store.set_json("projects", payload)

    assert store.get_json("projects") == payload
    assert store.revision("projects") == 1


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    legacy_path = tmp_path / "metrics.json"
    legacy_path.write_text(json.dumps([{"event": "legacy"}]), encoding="utf-8")

    assert store.get_json("metrics") == [{"event": "legacy"}]

    store.set_json("metrics", [])
    on_disk = json.loads(legacy_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 1
    assert on_disk["data"] == []


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )

    assert store.get_json("metrics")["count"] == 2
    assert store.get_envelope("metrics")["revision"] > first_revision


def test_set_json_rejects_stale_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("leases", {"p1": None})
    stale = store.revision("leases")
    store.set_json("leases", {"p1": {"session_id": "a"}})

    with pytest.raises(ConcurrentUpdateError):
        store.set_json("leases", {}, expected_revision=stale)
    assert store.get_json("leases") == {"p1": {"session_id": "a"}}


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    with pytest.raises(StateStoreError, match="Unsupported namespace"):
        store.set_json("patches", {})


def test_append_prunes_to_keep_after_exceeding_max(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    sizes = [store.append("collaboration", {"n": n}, max_items=3, keep=2) for n in range(4)]

    assert sizes == [1, 2, 3, 2]
    assert store.get_json("collaboration") == [{"n": 2}, {"n": 3}]


def test_concurrent_appends_from_separate_stores_are_not_lost(tmp_path: Path) -> None:
    state_dir = tmp_path / "shared"
    StateStore(state_dir)

    def _worker(worker_id: int) -> None:
        store = StateStore(state_dir)
        for index in range(10):
            store.append("knowledge", {"worker": worker_id, "index": index})

    threads = [threading.Thread(target=_worker, args=(worker_id,)) for worker_id in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    entries = StateStore(state_dir).get_json("knowledge")
    assert len(entries) == 40
    assert StateStore(state_dir).revision("knowledge") == 40


def test_stale_lock_is_broken(tmp_path: Path) -> None:
    store = StateStore(tmp_path, stale_lock_seconds=1.0)
    store.lock_file.write_text("99999", encoding="utf-8")
    old = time.time() - 120
    os.utime(store.lock_file, (old, old))

    store.set_json("tasks", {"tasks": []})

    assert store.get_json("tasks") == {"tasks": []}
    assert not store.lock_file.exists()


def test_fresh_lock_times_out(tmp_path: Path) -> None:
    store = StateStore(tmp_path, lock_timeout_seconds=0.05, stale_lock_seconds=60.0)
    store.lock_file.write_text("99999", encoding="utf-8")

    with pytest.raises(StateStoreError, match="Timed out"):
        store.set_json("tasks", {"tasks": []})


def test_export_import_text(tmp_path: Path) -> None:
    source = StateStore(tmp_path / "a")
    source.set_json("nag_status", {"lint": {"status": "OK"}})
    target = StateStore(tmp_path / "b")

    target.import_text("nag_status", source.export_text("nag_status"))

    assert target.get_json("nag_status") == {"lint": {"status": "OK"}}
    with pytest.raises(StateStoreError, match="Invalid nag_status export"):
        target.import_text("nag_status", "{not json")


def test_worktree_store_lives_under_nightshift_dir(tmp_path: Path) -> None:
    store = StateStore.for_worktree(tmp_path)

    assert store.state_dir == (tmp_path / ".nightshift" / "state").resolve()
    assert store.state_dir.is_dir()
