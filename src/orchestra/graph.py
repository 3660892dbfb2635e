from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal["pending", "ready", "running", "succeeded", "failed", "skipped"]
KillReason = Literal["idle_timeout", "thinking_timeout", "tool_timeout"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "skipped"})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"ready", "failed", "skipped"}),
    "ready": frozenset({"running", "failed", "skipped"}),
    "running": frozenset({"succeeded", "failed"}),
}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class GraphError(ValueError):
    """Raised when a submitted task list cannot form a dependency graph."""


class CycleError(GraphError):
    """Raised when the dependency relation contains a cycle."""

    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(
            "Circular dependency detected between tasks: " + ", ".join(task_ids)
        )
        self.task_ids = task_ids


class InvalidTransitionError(RuntimeError):
    """Raised when a status change is not allowed from the current status."""


@dataclass(slots=True, frozen=True)
class TaskSpec:
    id: str
    dependencies: tuple[str, ...] = ()
    payload: Any = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskSpec:
        task_id = str(data.get("id", "")).strip()
        if not task_id:
            raise GraphError("Task entry is missing an id.")
        raw_deps = data.get("dependencies", data.get("depends_on", ())) or ()
        if isinstance(raw_deps, str):
            raw_deps = [raw_deps]
        payload = data.get("payload")
        if payload is None:
            extra = {
                key: value
                for key, value in data.items()
                if key not in {"id", "dependencies", "depends_on"}
            }
            payload = extra or None
        return cls(
            id=task_id,
            dependencies=tuple(str(dep) for dep in raw_deps),
            payload=payload,
        )


@dataclass(slots=True)
class TaskRecord:
    id: str
    dependencies: tuple[str, ...]
    payload: Any
    order: int
    status: TaskStatus = "pending"
    retry_count: int = 0
    last_kill_reason: KillReason | None = None
    failure_reason: str | None = None
    output: str = ""
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "dependencies": list(self.dependencies),
            "status": self.status,
            "retry_count": self.retry_count,
            "last_kill_reason": self.last_kill_reason,
            "failure_reason": self.failure_reason,
            "output": self.output[:4000],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass(slots=True)
class _Node:
    record: TaskRecord
    dependents: list[str] = field(default_factory=list)


class DependencyGraph:
    """Task graph keyed by task id with a single status-transition point.

    Every read of the ready set and every status change happens under one
    re-entrant lock, so concurrent workers never observe or produce an
    overlapping ready set.
    """

    def __init__(self, tasks: Iterable[TaskSpec | Mapping[str, Any]] = ()) -> None:
        self._lock = threading.RLock()
        self._nodes: dict[str, _Node] = {}
        specs = list(tasks)
        if specs:
            self.submit(specs)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    @staticmethod
    def _coerce(item: TaskSpec | Mapping[str, Any]) -> TaskSpec:
        if isinstance(item, TaskSpec):
            return item
        return TaskSpec.from_dict(item)

    def submit(self, tasks: Iterable[TaskSpec | Mapping[str, Any]]) -> None:
        specs = [self._coerce(item) for item in tasks]
        with self._lock:
            if self._nodes:
                raise GraphError("Tasks were already submitted to this graph.")

            seen: set[str] = set()
            for spec in specs:
                if spec.id in seen:
                    raise GraphError(f"Duplicate task id: {spec.id}")
                seen.add(spec.id)
            for spec in specs:
                unknown = [dep for dep in spec.dependencies if dep not in seen]
                if unknown:
                    raise GraphError(
                        f"Task {spec.id} depends on unknown task(s): {', '.join(unknown)}"
                    )
                if spec.id in spec.dependencies:
                    raise CycleError([spec.id])

            nodes: dict[str, _Node] = {}
            for index, spec in enumerate(specs):
                nodes[spec.id] = _Node(
                    record=TaskRecord(
                        id=spec.id,
                        dependencies=tuple(dict.fromkeys(spec.dependencies)),
                        payload=spec.payload,
                        order=index,
                    )
                )
            for node in nodes.values():
                for dep_id in node.record.dependencies:
                    nodes[dep_id].dependents.append(node.record.id)

            unordered = self._unordered_ids(nodes)
            if unordered:
                raise CycleError(unordered)

            self._nodes = nodes
            for node in nodes.values():
                if not node.record.dependencies:
                    node.record.status = "ready"

    @staticmethod
    def _unordered_ids(nodes: dict[str, _Node]) -> list[str]:
        remaining = {task_id: len(node.record.dependencies) for task_id, node in nodes.items()}
        frontier = [task_id for task_id, count in remaining.items() if count == 0]
        while frontier:
            task_id = frontier.pop()
            del remaining[task_id]
            for dependent in nodes[task_id].dependents:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    frontier.append(dependent)
        return sorted(remaining, key=lambda task_id: nodes[task_id].record.order)

    def get(self, task_id: str) -> TaskRecord:
        try:
            return self._nodes[task_id].record
        except KeyError as exc:
            raise KeyError(f"Unknown task: {task_id}") from exc

    def records(self) -> list[TaskRecord]:
        with self._lock:
            return sorted(
                (node.record for node in self._nodes.values()),
                key=lambda record: record.order,
            )

    def dependents(self, task_id: str) -> list[str]:
        return list(self._nodes[task_id].dependents)

    def topological_order(self) -> list[str]:
        with self._lock:
            remaining = {
                task_id: len(node.record.dependencies) for task_id, node in self._nodes.items()
            }
            order: list[str] = []
            while remaining:
                layer = sorted(
                    (task_id for task_id, count in remaining.items() if count == 0),
                    key=lambda task_id: self._nodes[task_id].record.order,
                )
                for task_id in layer:
                    del remaining[task_id]
                    order.append(task_id)
                    for dependent in self._nodes[task_id].dependents:
                        remaining[dependent] -= 1
            return order

    def _dependencies_succeeded(self, record: TaskRecord) -> bool:
        return all(
            self._nodes[dep_id].record.status == "succeeded" for dep_id in record.dependencies
        )

    def ready_set(self) -> list[TaskRecord]:
        with self._lock:
            ready = [
                node.record
                for node in self._nodes.values()
                if node.record.status in {"pending", "ready"}
                and self._dependencies_succeeded(node.record)
            ]
            return sorted(ready, key=lambda record: record.order)

    def transition(self, task_id: str, status: TaskStatus, *, reason: str | None = None) -> None:
        with self._lock:
            record = self.get(task_id)
            if record.status == status:
                return
            allowed = _ALLOWED_TRANSITIONS.get(record.status, frozenset())
            if status not in allowed:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {record.status} to {status}."
                )
            if status == "ready" and not self._dependencies_succeeded(record):
                raise InvalidTransitionError(
                    f"Task {task_id} still has outstanding dependencies."
                )
            record.status = status
            if status == "running":
                record.started_at = utcnow_iso()
            if status in TERMINAL_STATUSES:
                record.finished_at = utcnow_iso()
            if reason:
                record.failure_reason = reason

    def annotate(
        self,
        task_id: str,
        *,
        retry_count: int | None = None,
        kill_reason: KillReason | None = None,
        output: str | None = None,
    ) -> None:
        with self._lock:
            record = self.get(task_id)
            if record.terminal:
                raise InvalidTransitionError(f"Task {task_id} is already {record.status}.")
            if retry_count is not None:
                record.retry_count = retry_count
            if kill_reason is not None:
                record.last_kill_reason = kill_reason
            if output is not None:
                record.output = output

    def claim_next(self) -> TaskRecord | None:
        with self._lock:
            ready = self.ready_set()
            if not ready:
                return None
            record = ready[0]
            if record.status == "pending":
                self.transition(record.id, "ready")
            self.transition(record.id, "running")
            return record

    def mark_succeeded(self, task_id: str) -> list[str]:
        with self._lock:
            self.transition(task_id, "succeeded")
            promoted: list[str] = []
            for dependent_id in self._nodes[task_id].dependents:
                dependent = self._nodes[dependent_id].record
                if dependent.status == "pending" and self._dependencies_succeeded(dependent):
                    self.transition(dependent_id, "ready")
                    promoted.append(dependent_id)
            return promoted

    def mark_failed(self, task_id: str, reason: str | None = None) -> list[str]:
        with self._lock:
            self.transition(task_id, "failed", reason=reason)
            skipped: list[str] = []
            stack = list(self._nodes[task_id].dependents)
            while stack:
                dependent_id = stack.pop(0)
                dependent = self._nodes[dependent_id].record
                if dependent.terminal:
                    continue
                self.transition(dependent_id, "skipped", reason=f"dependency_failed:{task_id}")
                skipped.append(dependent_id)
                stack.extend(self._nodes[dependent_id].dependents)
            return sorted(skipped, key=lambda skipped_id: self._nodes[skipped_id].record.order)

    def is_complete(self) -> bool:
        with self._lock:
            return all(node.record.terminal for node in self._nodes.values())

    def summary(self) -> dict[str, int]:
        counts = {
            "pending": 0,
            "ready": 0,
            "running": 0,
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
        }
        with self._lock:
            for node in self._nodes.values():
                counts[node.record.status] += 1
        return counts
