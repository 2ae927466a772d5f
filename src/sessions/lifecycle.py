"""Session lifecycle state machine.

The implicit initial state is "no open session" for an actor.  ``start``
leaves it; ``finish`` and ``cancel`` enter a terminal status from which
nothing else is allowed.
"""

from __future__ import annotations

from enum import StrEnum

from devsuite.errors import InvalidTransition
from devsuite.sessions.models import SessionStatus

TERMINAL_STATUSES = frozenset({SessionStatus.FINISHED, SessionStatus.CANCELLED})
OPEN_STATUSES = frozenset({SessionStatus.RUNNING, SessionStatus.PAUSED})


class SessionAction(StrEnum):
    """Every write a caller can perform on an existing session."""

    PAUSE = "pause"
    RESUME = "resume"
    FINISH = "finish"
    CANCEL = "cancel"
    ACTIVATE_TASK = "activate tasks in"
    DEACTIVATE_TASK = "deactivate tasks in"
    MARK_TASK_DONE = "mark tasks done in"
    RESET_TASK = "reset tasks in"
    LOG_STEP = "log steps in"
    ASSIGN_PROJECT = "assign projects to"
    UNASSIGN_PROJECT = "unassign projects from"


# Source statuses from which each action is legal.
ALLOWED_FROM: dict[SessionAction, frozenset[SessionStatus]] = {
    SessionAction.PAUSE: frozenset({SessionStatus.RUNNING}),
    SessionAction.RESUME: frozenset({SessionStatus.PAUSED}),
    SessionAction.FINISH: OPEN_STATUSES,
    SessionAction.CANCEL: OPEN_STATUSES,
    SessionAction.ACTIVATE_TASK: OPEN_STATUSES,
    SessionAction.DEACTIVATE_TASK: OPEN_STATUSES,
    SessionAction.MARK_TASK_DONE: OPEN_STATUSES,
    SessionAction.RESET_TASK: OPEN_STATUSES,
    SessionAction.LOG_STEP: OPEN_STATUSES,
    SessionAction.ASSIGN_PROJECT: OPEN_STATUSES,
    SessionAction.UNASSIGN_PROJECT: OPEN_STATUSES,
}

# Status a session moves to after the action; absent means unchanged.
RESULTING_STATUS: dict[SessionAction, SessionStatus] = {
    SessionAction.PAUSE: SessionStatus.PAUSED,
    SessionAction.RESUME: SessionStatus.RUNNING,
    SessionAction.FINISH: SessionStatus.FINISHED,
    SessionAction.CANCEL: SessionStatus.CANCELLED,
}


def is_terminal(status: SessionStatus) -> bool:
    """True if no more events may be appended in this status."""
    return status in TERMINAL_STATUSES


def is_open(status: SessionStatus) -> bool:
    return status in OPEN_STATUSES


def assert_transition(status: SessionStatus, action: SessionAction) -> None:
    """Raise ``InvalidTransition`` unless ``action`` is legal from ``status``."""
    if status in ALLOWED_FROM[action]:
        return
    if is_terminal(status):
        raise InvalidTransition(f"Cannot {action} a {status.lower()} session")
    allowed = " or ".join(sorted(ALLOWED_FROM[action]))
    raise InvalidTransition(f"Session must be {allowed} to {action}, not {status}")


def next_status(status: SessionStatus, action: SessionAction) -> SessionStatus:
    """Validate ``action`` and return the status the session ends up in."""
    assert_transition(status, action)
    return RESULTING_STATUS.get(action, status)
