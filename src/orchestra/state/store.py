from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class StateError(RuntimeError):
    """Raised when run-record persistence fails."""


class RevisionConflict(StateError):
    """The document changed between read and write."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class JsonStateStore:
    """Versioned JSON documents under ``<state dir>/<namespace>.json``.

    Each file holds ``{schema_version, revision, updated_at, data}``. Files
    that are missing, unreadable or not in that shape read as revision 0 with
    the caller's default data. Writers hold ``.lock`` (created with O_EXCL)
    and may demand the revision they read.
    """

    NAMESPACES = {"runs", "tasks", "events", "workspaces"}
    SCHEMA_VERSION = 1
    EVENT_HISTORY = 500
    UPDATE_ATTEMPTS = 4

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = Path(state_dir).resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def _path(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        deadline = time.monotonic() + self.lock_timeout_seconds
        while True:
            try:
                with open(self.lock_file, "x", encoding="utf-8") as handle:
                    handle.write(str(os.getpid()))
                break
            except FileExistsError as exc:
                if time.monotonic() >= deadline:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        path = self._path(namespace)
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            envelope = None
        if not isinstance(envelope, dict) or not {"revision", "data"} <= envelope.keys():
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 0,
                "updated_at": None,
                "data": {} if default is None else default,
            }
        envelope["revision"] = int(envelope["revision"] or 0)
        return envelope

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        path = self._path(namespace)
        with self._locked():
            revision = self.get_envelope(namespace)["revision"]
            if expected_revision is not None and expected_revision != revision:
                raise RevisionConflict(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision + 1,
                "updated_at": _utcnow_iso(),
                "data": data,
            }
            staging = path.with_name(f"{path.name}.tmp")
            staging.write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2, sort_keys=True),
                encoding="utf-8",
            )
            os.replace(staging, path)
        return revision + 1

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace``, rereading when another writer got in first."""
        attempts_left = self.UPDATE_ATTEMPTS
        while True:
            attempts_left -= 1
            envelope = self.get_envelope(namespace, default=default)
            updated = updater(envelope["data"])
            try:
                self.set_json(namespace, updated, expected_revision=envelope["revision"])
                return updated
            except RevisionConflict:
                if attempts_left <= 0:
                    raise
                time.sleep(0.01)

    def _mapping(self, namespace: str) -> dict[str, Any]:
        data = self.get_json(namespace)
        return data if isinstance(data, dict) else {}

    def _edit_mapping(self, namespace: str, edit: Callable[[dict[str, Any]], None]) -> None:
        def _updater(data: Any) -> dict[str, Any]:
            mapping = data if isinstance(data, dict) else {}
            edit(mapping)
            return mapping

        self.update_json(namespace, _updater)

    def get_runs(self) -> dict[str, Any]:
        return self._mapping("runs")

    def record_run(self, run: dict[str, Any]) -> None:
        """Merge ``run`` into the record stored under its ``run_id``."""
        run_id = str(run["run_id"])

        def _merge(runs: dict[str, Any]) -> None:
            runs[run_id] = {**runs.get(run_id, {}), **run}

        self._edit_mapping("runs", _merge)

    def get_tasks(self, run_id: str | None = None) -> dict[str, Any]:
        tasks = self._mapping("tasks")
        if run_id is None:
            return tasks
        scoped = tasks.get(run_id)
        return scoped if isinstance(scoped, dict) else {}

    def record_task(self, run_id: str, task: dict[str, Any]) -> None:
        def _store(tasks: dict[str, Any]) -> None:
            tasks.setdefault(run_id, {})[str(task["id"])] = task

        self._edit_mapping("tasks", _store)

    def get_events(self) -> list[dict[str, Any]]:
        events = self._mapping("events").get("events")
        return events if isinstance(events, list) else []

    def append_event(self, event: dict[str, Any]) -> None:
        """Append to the event log, keeping the newest ``EVENT_HISTORY`` entries."""

        def _append(log: dict[str, Any]) -> None:
            history = log.setdefault("events", [])
            history.append({"at": _utcnow_iso(), **event})
            del history[: max(0, len(history) - self.EVENT_HISTORY)]

        self._edit_mapping("events", _append)

    def get_workspaces(self) -> dict[str, Any]:
        return self._mapping("workspaces")

    def set_workspace(self, task_id: str, record: dict[str, Any]) -> None:
        def _claim(owners: dict[str, Any]) -> None:
            owners[task_id] = record

        self._edit_mapping("workspaces", _claim)

    def drop_workspace(self, task_id: str) -> None:
        self._edit_mapping("workspaces", lambda owners: owners.pop(task_id, None))
