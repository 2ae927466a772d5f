"""Tests for src/sessions/derivation.py — replaying event logs into durations."""

import logging

from devsuite.sessions.derivation import derive_session_durations, flow_end_for, is_monotonic
from devsuite.sessions.models import (
    CancelMode,
    EmptyPayload,
    SessionCancelledPayload,
    SessionEvent,
    SessionEventType,
    SessionStartedPayload,
    SessionStatus,
    StepLoggedPayload,
    TaskEventPayload,
)

T = SessionEventType


def _ev(event_type: SessionEventType, ts: int, task: str | None = None, **kwargs) -> SessionEvent:
    if task is not None:
        payload = TaskEventPayload(task_id=task)
    elif event_type == T.SESSION_STARTED:
        payload = SessionStartedPayload()
    elif event_type == T.SESSION_CANCELLED:
        payload = SessionCancelledPayload(cancel_mode=CancelMode.KEEP_EXCLUDED)
    else:
        payload = EmptyPayload()
    return SessionEvent(session_id="s1", type=event_type, timestamp=ts, payload=payload, **kwargs)


class TestFlowEnd:
    def test_open_session_uses_now(self):
        assert flow_end_for(SessionStatus.RUNNING, None, 5000) == 5000
        assert flow_end_for(SessionStatus.PAUSED, None, 5000) == 5000

    def test_terminal_session_uses_end_at(self):
        assert flow_end_for(SessionStatus.FINISHED, 3000, 9000) == 3000
        assert flow_end_for(SessionStatus.CANCELLED, 3000, 9000) == 3000

    def test_terminal_without_end_at_falls_back_to_now(self):
        assert flow_end_for(SessionStatus.FINISHED, None, 9000) == 9000


class TestIsMonotonic:
    def test_empty_and_single(self):
        assert is_monotonic([])
        assert is_monotonic([_ev(T.SESSION_STARTED, 0)])

    def test_equal_timestamps_are_not_monotonic(self):
        assert not is_monotonic([_ev(T.SESSION_STARTED, 0), _ev(T.SESSION_PAUSED, 0)])


class TestZeroEvents:
    def test_running_counts_whole_window(self):
        summary, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, [], 5000)
        assert summary.effective_duration_ms == 5000
        assert summary.active_task_duration_ms == 0
        assert summary.unallocated_duration_ms == 5000
        assert summary.has_unallocated_time is True
        assert tasks == {}

    def test_paused_counts_nothing(self):
        summary, _ = derive_session_durations(SessionStatus.PAUSED, 0, None, [], 5000)
        assert summary.effective_duration_ms == 0
        assert summary.has_unallocated_time is False

    def test_flow_end_before_start(self):
        summary, tasks = derive_session_durations(SessionStatus.RUNNING, 5000, None, [], 1000)
        assert summary.effective_duration_ms == 0
        assert summary.unallocated_duration_ms == 0
        assert tasks == {}


class TestSegmentation:
    def test_pause_resume_with_two_tasks(self):
        events = [
            _ev(T.TASK_ACTIVATED, 0, task="A"),
            _ev(T.SESSION_PAUSED, 1000),
            _ev(T.SESSION_RESUMED, 2000),
            _ev(T.TASK_ACTIVATED, 2500, task="B"),
            _ev(T.SESSION_FINISHED, 3000),
        ]
        summary, tasks = derive_session_durations(SessionStatus.FINISHED, 0, 3000, events, 99_999)

        assert summary.effective_duration_ms == 2000
        assert tasks["A"].active_duration_ms == 2000
        assert tasks["B"].active_duration_ms == 500
        assert summary.active_task_duration_ms == 2000
        assert summary.unallocated_duration_ms == 0
        assert summary.has_overlap is True
        assert summary.has_unallocated_time is False

    def test_explicit_start_event(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 400, task="A"),
            _ev(T.TASK_DEACTIVATED, 1000, task="A"),
        ]
        summary, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 2000)
        assert summary.effective_duration_ms == 2000
        assert summary.active_task_duration_ms == 600
        assert summary.unallocated_duration_ms == 1400
        assert tasks["A"].active_duration_ms == 600
        assert tasks["A"].last_deactivated_at == 1000

    def test_paused_tail_not_counted(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 100, task="A"),
            _ev(T.SESSION_PAUSED, 1000),
        ]
        summary, tasks = derive_session_durations(SessionStatus.PAUSED, 0, None, events, 50_000)
        assert summary.effective_duration_ms == 1000
        assert tasks["A"].active_duration_ms == 900

    def test_task_active_while_paused_gets_no_time(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.SESSION_PAUSED, 1000),
            _ev(T.TASK_ACTIVATED, 1500, task="A"),
            _ev(T.SESSION_RESUMED, 2000),
        ]
        summary, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 2500)
        assert summary.effective_duration_ms == 1500
        assert tasks["A"].active_duration_ms == 500

    def test_single_task_is_not_overlap(self):
        events = [_ev(T.SESSION_STARTED, 0), _ev(T.TASK_ACTIVATED, 0, task="A")]
        summary, _ = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 1000)
        assert summary.has_overlap is False

    def test_step_events_do_not_change_durations(self):
        base = [_ev(T.SESSION_STARTED, 0), _ev(T.TASK_ACTIVATED, 100, task="A")]
        step = SessionEvent(
            session_id="s1",
            type=T.STEP_LOGGED,
            timestamp=500,
            payload=StepLoggedPayload(text="wired up the parser", task_id="A"),
        )
        without, _ = derive_session_durations(SessionStatus.RUNNING, 0, None, base, 2000)
        with_step, tasks = derive_session_durations(
            SessionStatus.RUNNING, 0, None, [*base, step], 2000
        )
        assert with_step == without
        assert tasks["A"].active_duration_ms == 1900


class TestConservation:
    def test_effective_plus_paused_equals_window(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 200, task="A"),
            _ev(T.SESSION_PAUSED, 1200),
            _ev(T.SESSION_RESUMED, 4000),
            _ev(T.TASK_DEACTIVATED, 4500, task="A"),
            _ev(T.SESSION_PAUSED, 6000),
            _ev(T.SESSION_RESUMED, 6500),
            _ev(T.SESSION_FINISHED, 8000),
        ]
        summary, _ = derive_session_durations(SessionStatus.FINISHED, 0, 8000, events, 8000)
        paused = (4000 - 1200) + (6500 - 6000)
        assert summary.effective_duration_ms + paused == 8000
        assert (
            summary.active_task_duration_ms + summary.unallocated_duration_ms
            == summary.effective_duration_ms
        )

    def test_task_time_bounded_by_effective(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 0, task="A"),
            _ev(T.TASK_ACTIVATED, 10, task="B"),
            _ev(T.TASK_ACTIVATED, 20, task="C"),
        ]
        summary, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 1000)
        for task in tasks.values():
            assert 0 <= task.active_duration_ms <= summary.effective_duration_ms
        assert summary.active_task_duration_ms <= summary.effective_duration_ms


class TestIdempotence:
    def test_same_inputs_same_output(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 100, task="A"),
            _ev(T.TASK_MARKED_DONE, 900, task="A"),
        ]
        first = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 2000)
        second = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 2000)
        assert first[0] == second[0]
        assert {k: v.model_dump() for k, v in first[1].items()} == {
            k: v.model_dump() for k, v in second[1].items()
        }

    def test_client_timestamp_is_ignored(self):
        plain = [_ev(T.SESSION_STARTED, 0), _ev(T.SESSION_PAUSED, 1000)]
        skewed = [
            _ev(T.SESSION_STARTED, 0, client_timestamp=-50_000),
            _ev(T.SESSION_PAUSED, 1000, client_timestamp=999_999),
        ]
        a, _ = derive_session_durations(SessionStatus.PAUSED, 0, None, plain, 5000)
        b, _ = derive_session_durations(SessionStatus.PAUSED, 0, None, skewed, 5000)
        assert a == b


class TestTaskFlags:
    def test_first_activation_is_recorded_once(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 100, task="A"),
            _ev(T.TASK_DEACTIVATED, 200, task="A"),
            _ev(T.TASK_ACTIVATED, 300, task="A"),
        ]
        _, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 500)
        assert tasks["A"].was_active is True
        assert tasks["A"].first_activated_at == 100
        assert tasks["A"].active_duration_ms == 300

    def test_done_keeps_task_active(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 0, task="A"),
            _ev(T.TASK_MARKED_DONE, 400, task="A"),
        ]
        _, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 1000)
        assert tasks["A"].was_completed is True
        assert tasks["A"].active_duration_ms == 1000

    def test_reset_deactivates_and_clears_completion(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 0, task="A"),
            _ev(T.TASK_MARKED_DONE, 400, task="A"),
            _ev(T.TASK_RESET, 600, task="A"),
        ]
        summary, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 1000)
        assert tasks["A"].was_completed is False
        assert tasks["A"].active_duration_ms == 600
        assert tasks["A"].last_deactivated_at == 600
        assert summary.unallocated_duration_ms == 400

    def test_done_without_activation_is_tracked_with_zero_time(self):
        events = [_ev(T.SESSION_STARTED, 0), _ev(T.TASK_MARKED_DONE, 100, task="A")]
        _, tasks = derive_session_durations(SessionStatus.RUNNING, 0, None, events, 1000)
        assert tasks["A"].was_active is False
        assert tasks["A"].was_completed is True
        assert tasks["A"].active_duration_ms == 0

    def test_finish_clears_active_tasks(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 0, task="A"),
            _ev(T.SESSION_FINISHED, 700),
        ]
        _, tasks = derive_session_durations(SessionStatus.FINISHED, 0, 700, events, 10_000)
        assert tasks["A"].active_duration_ms == 700
        assert tasks["A"].last_deactivated_at == 700

    def test_cancel_clears_active_tasks(self):
        events = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 0, task="A"),
            _ev(T.SESSION_CANCELLED, 300),
        ]
        summary, tasks = derive_session_durations(SessionStatus.CANCELLED, 0, 300, events, 10_000)
        assert summary.effective_duration_ms == 300
        assert tasks["A"].last_deactivated_at == 300


class TestOrdering:
    def test_unordered_input_is_sorted(self, caplog):
        ordered = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 100, task="A"),
            _ev(T.SESSION_PAUSED, 1000),
        ]
        shuffled = [ordered[2], ordered[0], ordered[1]]

        expected, _ = derive_session_durations(SessionStatus.PAUSED, 0, None, ordered, 5000)
        with caplog.at_level(logging.WARNING, logger="devsuite.sessions.derivation"):
            actual, tasks = derive_session_durations(SessionStatus.PAUSED, 0, None, shuffled, 5000)

        assert actual == expected
        assert tasks["A"].active_duration_ms == 900
        assert "not strictly ordered" in caplog.text

    def test_equal_timestamps_keep_insertion_order(self):
        on_then_off = [
            _ev(T.SESSION_STARTED, 0),
            _ev(T.TASK_ACTIVATED, 500, task="A"),
            _ev(T.TASK_DEACTIVATED, 500, task="A"),
        ]
        off_then_on = [on_then_off[0], on_then_off[2], on_then_off[1]]

        _, first = derive_session_durations(SessionStatus.RUNNING, 0, None, on_then_off, 1000)
        _, second = derive_session_durations(SessionStatus.RUNNING, 0, None, off_then_on, 1000)
        assert first["A"].active_duration_ms == 0
        assert second["A"].active_duration_ms == 500

    def test_events_outside_window_are_clamped(self):
        events = [
            _ev(T.SESSION_STARTED, 1000),
            _ev(T.TASK_ACTIVATED, 1000, task="A"),
            _ev(T.SESSION_FINISHED, 3000),
        ]
        # end_at earlier than the last event: nothing past it counts.
        summary, tasks = derive_session_durations(SessionStatus.FINISHED, 1000, 2000, events, 9000)
        assert summary.effective_duration_ms == 1000
        assert tasks["A"].active_duration_ms == 1000
