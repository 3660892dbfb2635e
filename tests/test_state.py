import json
from pathlib import Path

import pytest

from orchestra.state import JsonStateStore, RevisionConflict, StateError


def test_set_json_wraps_data_in_revisioned_envelope(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state")

    assert store.set_json("runs", {"a": 1}) == 1
    assert store.set_json("runs", {"a": 2}) == 2

    on_disk = json.loads((tmp_path / "state" / "runs.json").read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == JsonStateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 2
    assert on_disk["data"] == {"a": 2}
    assert store.get_json("runs") == {"a": 2}
    assert not (tmp_path / "state" / ".lock").exists()


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.set_json("tasks", {})

    with pytest.raises(StateError, match="Concurrent state update detected"):
        store.set_json("tasks", {"x": 1}, expected_revision=0)
    assert store.get_json("tasks") == {}


def test_file_without_envelope_reads_as_empty(tmp_path: Path) -> None:
    (tmp_path / "runs.json").write_text(json.dumps({"run-1": {}}), encoding="utf-8")
    store = JsonStateStore(tmp_path)

    assert store.get_runs() == {}
    assert store.get_envelope("runs")["revision"] == 0
    assert store.set_json("runs", {"run-2": {}}) == 1


def test_update_gives_up_after_repeated_conflicts(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    calls: list[int] = []

    def _racing_writer(data: dict) -> dict:
        calls.append(1)
        store.set_json("runs", {"other": len(calls)})
        return {"mine": True}

    with pytest.raises(RevisionConflict):
        store.update_json("runs", _racing_writer)
    assert len(calls) == JsonStateStore.UPDATE_ATTEMPTS
    assert store.get_runs() == {"other": JsonStateStore.UPDATE_ATTEMPTS}


def test_corrupt_file_falls_back_to_default(tmp_path: Path) -> None:
    (tmp_path / "events.json").write_text("{not json", encoding="utf-8")
    store = JsonStateStore(tmp_path)

    assert store.get_events() == []


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)

    with pytest.raises(StateError, match="Unsupported namespace"):
        store.set_json("secrets", {})


def test_lock_timeout(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path, lock_timeout_seconds=0.05)
    store.lock_file.write_text("12345", encoding="utf-8")

    with pytest.raises(StateError, match="Timed out"):
        store.set_json("runs", {})


def test_run_and_task_records_merge(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)

    store.record_run({"run_id": "run-1", "status": "in_progress", "total_tasks": 2})
    store.record_run({"run_id": "run-1", "status": "succeeded"})
    store.record_task("run-1", {"id": "A", "status": "succeeded"})
    store.record_task("run-1", {"id": "B", "status": "skipped"})
    store.record_task("run-2", {"id": "A", "status": "failed"})

    assert store.get_runs()["run-1"] == {
        "run_id": "run-1",
        "status": "succeeded",
        "total_tasks": 2,
    }
    assert sorted(store.get_tasks("run-1")) == ["A", "B"]
    assert store.get_tasks("run-2")["A"]["status"] == "failed"
    assert store.get_tasks("missing") == {}


def test_event_history_is_capped(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(JsonStateStore, "EVENT_HISTORY", 3)
    store = JsonStateStore(tmp_path)

    for index in range(5):
        store.append_event({"event": "tick", "index": index})

    events = store.get_events()
    assert [event["index"] for event in events] == [2, 3, 4]
    assert all("at" in event for event in events)


def test_workspace_owner_records(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)

    store.set_workspace("A", {"path": "/tmp/a"})
    store.set_workspace("B", {"path": "/tmp/b"})
    store.drop_workspace("A")
    store.drop_workspace("never")

    assert store.get_workspaces() == {"B": {"path": "/tmp/b"}}
