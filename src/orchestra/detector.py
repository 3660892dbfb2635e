"""Phase-based liveness tracking for worker processes."""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from orchestra.executors.base import ActivityEvent
from orchestra.graph import KillReason

Phase = Literal["idle", "thinking", "tool_use"]

_REASONS: dict[str, KillReason] = {
    "idle": "idle_timeout",
    "thinking": "thinking_timeout",
    "tool_use": "tool_timeout",
}


@dataclass(slots=True)
class StuckThresholds:
    idle_timeout_seconds: float = 120.0
    thinking_timeout_seconds: float = 180.0
    tool_timeout_seconds: float = 300.0
    warning_threshold: float = 0.75

    def timeout_for(self, phase: Phase) -> float:
        if phase == "thinking":
            return self.thinking_timeout_seconds
        if phase == "tool_use":
            return self.tool_timeout_seconds
        return self.idle_timeout_seconds


@dataclass(slots=True, frozen=True)
class StuckStatus:
    stuck: bool = False
    warning: bool = False
    reason: KillReason | None = None
    seconds_since_activity: float = 0.0
    seconds_until_timeout: float = math.inf


@dataclass(slots=True)
class _TrackState:
    phase: Phase
    clocks: dict[str, float]
    warning_issued: bool = False
    events_seen: int = 0
    last_event: str | None = field(default=None)


class StuckDetector:
    """Tracks per-task activity phases and reports timeouts.

    Each phase keeps its own clock. ``poll`` compares the active phase's
    elapsed time with that phase's threshold; it holds no opinion on what
    happens to a stuck task.
    """

    def __init__(
        self,
        thresholds: StuckThresholds | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.thresholds = thresholds or StuckThresholds()
        self._clock = clock
        self._states: dict[str, _TrackState] = {}

    def _fresh_state(self) -> _TrackState:
        now = self._clock()
        return _TrackState(
            phase="idle",
            clocks={"idle": now, "thinking": now, "tool_use": now},
        )

    def start_tracking(self, task_id: str) -> None:
        self._states[task_id] = self._fresh_state()

    def stop_tracking(self, task_id: str) -> None:
        self._states.pop(task_id, None)

    def is_tracking(self, task_id: str) -> bool:
        return task_id in self._states

    def phase(self, task_id: str) -> Phase | None:
        state = self._states.get(task_id)
        return state.phase if state else None

    def reset(self, task_id: str) -> None:
        if task_id in self._states:
            self._states[task_id] = self._fresh_state()

    def clear(self) -> None:
        self._states.clear()

    def record_output(self, task_id: str) -> None:
        state = self._states.get(task_id)
        if state is None:
            return
        state.clocks["thinking"] = self._clock()

    def record_activity(self, task_id: str) -> None:
        state = self._states.get(task_id)
        if state is None:
            return
        state.clocks["idle"] = self._clock()
        state.warning_issued = False

    def update_phase(self, task_id: str, phase: Phase) -> None:
        state = self._states.get(task_id)
        if state is None:
            return
        state.phase = phase
        state.clocks[phase] = self._clock()
        state.warning_issued = False

    def observe(self, task_id: str, event: ActivityEvent) -> None:
        state = self._states.get(task_id)
        if state is None:
            return
        state.events_seen += 1
        state.last_event = event.kind
        self.record_output(task_id)
        if event.kind == "idle_tick":
            return
        if event.kind == "thinking":
            self.update_phase(task_id, "thinking")
            return
        self.record_activity(task_id)
        if event.kind == "tool_use":
            self.update_phase(task_id, "tool_use")
        else:
            self.update_phase(task_id, "idle")

    def poll(self, task_id: str) -> StuckStatus:
        state = self._states.get(task_id)
        if state is None:
            return StuckStatus()

        timeout = self.thresholds.timeout_for(state.phase)
        elapsed = max(0.0, self._clock() - state.clocks[state.phase])
        reason = _REASONS[state.phase]
        remaining = max(0.0, timeout - elapsed)

        if elapsed > timeout:
            return StuckStatus(
                stuck=True,
                warning=True,
                reason=reason,
                seconds_since_activity=elapsed,
                seconds_until_timeout=0.0,
            )

        if elapsed > timeout * self.thresholds.warning_threshold and not state.warning_issued:
            state.warning_issued = True
            return StuckStatus(
                warning=True,
                reason=reason,
                seconds_since_activity=elapsed,
                seconds_until_timeout=remaining,
            )

        return StuckStatus(seconds_since_activity=elapsed, seconds_until_timeout=remaining)
