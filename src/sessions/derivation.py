"""Duration derivation engine.

Rebuilds a session's time accounting from its event log.  The log is
replayed as a sequence of segments: the intervals between consecutive
event timestamps, plus the tail from the last event to the flow end.
While the session clock is running, a segment counts as effective time;
every task active during it receives the full segment, and the segment
counts once toward allocated time if at least one task is active.

An open session is evaluated as though it ended at ``now_ms``.  Nothing
here reads a clock or touches storage, so identical inputs always give
identical output.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from devsuite.sessions.lifecycle import is_terminal
from devsuite.sessions.models import (
    DurationSummary,
    SessionEvent,
    SessionEventType,
    SessionStatus,
    TaskSummary,
)

logger = logging.getLogger(__name__)

_CLOCK_STARTS = frozenset({SessionEventType.SESSION_STARTED, SessionEventType.SESSION_RESUMED})
_CLOCK_STOPS = frozenset(
    {
        SessionEventType.SESSION_PAUSED,
        SessionEventType.SESSION_FINISHED,
        SessionEventType.SESSION_CANCELLED,
    }
)
_SESSION_ENDS = frozenset({SessionEventType.SESSION_FINISHED, SessionEventType.SESSION_CANCELLED})
_TASK_EVENTS = frozenset(
    {
        SessionEventType.TASK_ACTIVATED,
        SessionEventType.TASK_DEACTIVATED,
        SessionEventType.TASK_MARKED_DONE,
        SessionEventType.TASK_RESET,
    }
)


def flow_end_for(status: SessionStatus, end_at: int | None, now_ms: int) -> int:
    """Instant at which the session's timeline stops for reporting."""
    if is_terminal(status) and end_at is not None:
        return end_at
    return now_ms


def is_monotonic(events: Sequence[SessionEvent]) -> bool:
    """True if timestamps strictly increase in log order."""
    return all(a.timestamp < b.timestamp for a, b in zip(events, events[1:]))


class _Replay:
    """Mutable replay state for one derivation call."""

    def __init__(self, start_at: int, flow_end: int, running: bool) -> None:
        self.start_at = start_at
        self.flow_end = flow_end
        self.running = running
        self.active: dict[str, None] = {}
        self.tasks: dict[str, TaskSummary] = {}
        self.effective = 0
        self.allocated = 0
        self.overlap = False

    def task(self, task_id: str) -> TaskSummary:
        summary = self.tasks.get(task_id)
        if summary is None:
            summary = TaskSummary(task_id=task_id)
            self.tasks[task_id] = summary
        return summary

    def segment(self, begin: int, end: int) -> None:
        # Clamp to the session window so nothing outside start..flow_end counts.
        duration = min(end, self.flow_end) - max(begin, self.start_at)
        if duration <= 0 or not self.running:
            return
        self.effective += duration
        if not self.active:
            return
        self.allocated += duration
        if len(self.active) > 1:
            self.overlap = True
        for task_id in self.active:
            self.task(task_id).active_duration_ms += duration

    def deactivate(self, task_id: str, at: int) -> None:
        if task_id in self.active:
            del self.active[task_id]
            self.task(task_id).last_deactivated_at = at

    def apply(self, event: SessionEvent) -> None:
        kind = event.type
        if kind in _CLOCK_STARTS:
            self.running = True
        elif kind in _CLOCK_STOPS:
            self.running = False
            if kind in _SESSION_ENDS:
                for task_id in list(self.active):
                    self.deactivate(task_id, event.timestamp)

        if kind not in _TASK_EVENTS or not event.task_id:
            return
        task_id = event.task_id
        summary = self.task(task_id)
        if kind == SessionEventType.TASK_ACTIVATED:
            summary.was_active = True
            if summary.first_activated_at is None:
                summary.first_activated_at = event.timestamp
            self.active[task_id] = None
        elif kind == SessionEventType.TASK_DEACTIVATED:
            self.deactivate(task_id, event.timestamp)
        elif kind == SessionEventType.TASK_MARKED_DONE:
            summary.was_completed = True
        elif kind == SessionEventType.TASK_RESET:
            self.deactivate(task_id, event.timestamp)
            summary.was_completed = False


def derive_session_durations(
    status: SessionStatus,
    start_at: int,
    end_at: int | None,
    events: Iterable[SessionEvent],
    now_ms: int,
) -> tuple[DurationSummary, dict[str, TaskSummary]]:
    """Reconstruct effective, per-task, and unallocated time for a session.

    Args:
        status: Current session status.
        start_at: Session start instant.
        end_at: Session end instant; only meaningful once terminal.
        events: The session's event log, in any order.
        now_ms: Evaluation instant used as the flow end of open sessions.

    Returns:
        The session ``DurationSummary`` and a ``TaskSummary`` per task
        referenced by a task event, keyed by task id in first-seen order.
    """
    log = list(events)
    if not is_monotonic(log):
        logger.warning(
            "Event log for session %s is not strictly ordered; replaying sorted",
            log[0].session_id or "<unknown>",
        )
    # sorted() is stable, so equal timestamps keep their insertion order.
    ordered = sorted(log, key=lambda e: e.timestamp)
    flow_end = flow_end_for(status, end_at, now_ms)

    if not ordered:
        replay = _Replay(start_at, flow_end, running=status == SessionStatus.RUNNING)
        replay.segment(start_at, flow_end)
    else:
        # A trail without SESSION_STARTED is taken to have started at start_at.
        has_start = any(e.type == SessionEventType.SESSION_STARTED for e in ordered)
        replay = _Replay(start_at, flow_end, running=not has_start)
        boundary = start_at
        for event in ordered:
            replay.segment(boundary, event.timestamp)
            replay.apply(event)
            boundary = max(boundary, event.timestamp)
        replay.segment(boundary, flow_end)

        if is_terminal(status) and end_at is not None:
            for task_id in list(replay.active):
                replay.deactivate(task_id, end_at)

    unallocated = replay.effective - replay.allocated
    summary = DurationSummary(
        effective_duration_ms=replay.effective,
        active_task_duration_ms=replay.allocated,
        unallocated_duration_ms=unallocated,
        has_overlap=replay.overlap,
        has_unallocated_time=unallocated > 0,
    )
    return summary, replay.tasks
