"""Session domain — lifecycle, event log, and time derivation.

Public API re-exports for the sessions domain.
"""

from devsuite.sessions.derivation import derive_session_durations, flow_end_for
from devsuite.sessions.lifecycle import SessionAction, assert_transition, is_terminal
from devsuite.sessions.models import (
    CancelMode,
    DurationSummary,
    ProjectSummary,
    Session,
    SessionDetail,
    SessionEvent,
    SessionEventType,
    SessionListItem,
    SessionStatus,
    TaskSessionMetadata,
    TaskSummary,
)
from devsuite.sessions.services import SessionService
from devsuite.sessions.store import STORE_FILENAME, SessionStore
from devsuite.sessions.summaries import build_project_summaries, sort_task_summaries

__all__ = [
    # models
    "CancelMode",
    "DurationSummary",
    "ProjectSummary",
    "Session",
    "SessionDetail",
    "SessionEvent",
    "SessionEventType",
    "SessionListItem",
    "SessionStatus",
    "TaskSessionMetadata",
    "TaskSummary",
    # lifecycle
    "SessionAction",
    "assert_transition",
    "is_terminal",
    # derivation
    "derive_session_durations",
    "flow_end_for",
    # summaries
    "build_project_summaries",
    "sort_task_summaries",
    # store
    "STORE_FILENAME",
    "SessionStore",
    # service
    "SessionService",
]
