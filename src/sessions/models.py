"""Session domain models — pure Pydantic v2 data types.

A session is a bounded period of tracked work owned by one actor.  Its
history is an append-only log of ``SessionEvent`` records; every duration
the system reports is derived from that log on read and never stored.

All instants are integer Unix milliseconds.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

SUMMARY_MAX_LENGTH = 5000
STEP_TEXT_MAX_LENGTH = 5000


def _new_id() -> str:
    return uuid4().hex


class SessionStatus(StrEnum):
    """Lifecycle status of a session."""

    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"


class CancelMode(StrEnum):
    """How a cancelled session is kept."""

    DISCARD = "DISCARD"
    KEEP_EXCLUDED = "KEEP_EXCLUDED"


class SessionEventType(StrEnum):
    """Kinds of facts recorded in a session's event log."""

    SESSION_STARTED = "SESSION_STARTED"
    SESSION_PAUSED = "SESSION_PAUSED"
    SESSION_RESUMED = "SESSION_RESUMED"
    SESSION_FINISHED = "SESSION_FINISHED"
    SESSION_CANCELLED = "SESSION_CANCELLED"
    TASK_ACTIVATED = "TASK_ACTIVATED"
    TASK_DEACTIVATED = "TASK_DEACTIVATED"
    TASK_MARKED_DONE = "TASK_MARKED_DONE"
    TASK_RESET = "TASK_RESET"
    STEP_LOGGED = "STEP_LOGGED"
    PROJECT_ASSIGNED_TO_SESSION = "PROJECT_ASSIGNED_TO_SESSION"
    PROJECT_UNASSIGNED_FROM_SESSION = "PROJECT_UNASSIGNED_FROM_SESSION"


# ── Event payloads ──────────────────────────────────────────────


class EmptyPayload(BaseModel):
    """Payload of events that carry no data."""

    model_config = {"frozen": True}

    kind: Literal["empty"] = "empty"


class SessionStartedPayload(BaseModel):
    """Payload of SESSION_STARTED."""

    model_config = {"frozen": True}

    kind: Literal["session_started"] = "session_started"
    project_ids: list[str] = Field(default_factory=list)


class SessionCancelledPayload(BaseModel):
    """Payload of SESSION_CANCELLED."""

    model_config = {"frozen": True}

    kind: Literal["session_cancelled"] = "session_cancelled"
    cancel_mode: CancelMode


class TaskEventPayload(BaseModel):
    """Payload of the task activity events."""

    model_config = {"frozen": True}

    kind: Literal["task"] = "task"
    task_id: str


class StepLoggedPayload(BaseModel):
    """Payload of STEP_LOGGED."""

    model_config = {"frozen": True}

    kind: Literal["step_logged"] = "step_logged"
    text: str = Field(min_length=1, max_length=STEP_TEXT_MAX_LENGTH)
    task_id: str | None = None


class ProjectEventPayload(BaseModel):
    """Payload of project assignment events."""

    model_config = {"frozen": True}

    kind: Literal["project"] = "project"
    project_id: str


EventPayload = Annotated[
    Union[
        EmptyPayload,
        SessionStartedPayload,
        SessionCancelledPayload,
        TaskEventPayload,
        StepLoggedPayload,
        ProjectEventPayload,
    ],
    Field(discriminator="kind"),
]

# Which payload variant each event type must carry.
PAYLOAD_TYPES: dict[SessionEventType, type[BaseModel]] = {
    SessionEventType.SESSION_STARTED: SessionStartedPayload,
    SessionEventType.SESSION_PAUSED: EmptyPayload,
    SessionEventType.SESSION_RESUMED: EmptyPayload,
    SessionEventType.SESSION_FINISHED: EmptyPayload,
    SessionEventType.SESSION_CANCELLED: SessionCancelledPayload,
    SessionEventType.TASK_ACTIVATED: TaskEventPayload,
    SessionEventType.TASK_DEACTIVATED: TaskEventPayload,
    SessionEventType.TASK_MARKED_DONE: TaskEventPayload,
    SessionEventType.TASK_RESET: TaskEventPayload,
    SessionEventType.STEP_LOGGED: StepLoggedPayload,
    SessionEventType.PROJECT_ASSIGNED_TO_SESSION: ProjectEventPayload,
    SessionEventType.PROJECT_UNASSIGNED_FROM_SESSION: ProjectEventPayload,
}


# ── Persisted records ───────────────────────────────────────────


class SessionEvent(BaseModel):
    """An immutable, timestamped fact in a session's log.

    ``timestamp`` is assigned by the server and is the only field used
    for ordering and derivation.  ``client_timestamp`` is whatever the
    caller reported and is kept for diagnostics.
    """

    model_config = {"frozen": True}

    id: str = Field(default_factory=_new_id)
    session_id: str = ""
    tenant_id: str = ""
    actor_id: str = ""
    type: SessionEventType
    timestamp: int
    client_timestamp: int | None = None
    payload: EventPayload = Field(default_factory=EmptyPayload)

    @model_validator(mode="after")
    def _check_payload(self) -> SessionEvent:
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise ValueError(
                f"{self.type} requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )
        return self

    @property
    def task_id(self) -> str | None:
        """Task referenced by this event, if any."""
        return getattr(self.payload, "task_id", None)

    @property
    def project_id(self) -> str | None:
        """Project referenced by this event, if any."""
        return getattr(self.payload, "project_id", None)


class Session(BaseModel):
    """A work session row.

    Mutated only through the service layer; never hard-deleted.  A
    discarded session carries ``deleted_at`` and is hidden from normal
    listings.
    """

    id: str = Field(default_factory=_new_id)
    tenant_id: str
    actor_id: str
    status: SessionStatus = SessionStatus.RUNNING
    start_at: int
    end_at: int | None = None
    cancel_mode: CancelMode | None = None
    cancelled_at: int | None = None
    discarded_at: int | None = None
    summary: str | None = Field(default=None, max_length=SUMMARY_MAX_LENGTH)
    project_ids: list[str] = Field(default_factory=list)
    is_excluded_from_summaries: bool = False
    created_at: int = 0
    updated_at: int = 0
    deleted_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.FINISHED, SessionStatus.CANCELLED)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ── Derived views ───────────────────────────────────────────────


class DurationSummary(BaseModel):
    """Session-level time reconstruction."""

    effective_duration_ms: int = 0
    active_task_duration_ms: int = 0
    unallocated_duration_ms: int = 0
    has_overlap: bool = False
    has_unallocated_time: bool = False


class TaskSummary(BaseModel):
    """Per-task time reconstruction within one session."""

    task_id: str
    active_duration_ms: int = 0
    was_active: bool = False
    was_completed: bool = False
    first_activated_at: int | None = None
    last_deactivated_at: int | None = None


class ProjectSummary(BaseModel):
    """Active task time rolled up to a project."""

    project_id: str
    active_duration_ms: int = 0


class SessionDetail(BaseModel):
    """Everything a caller needs to render one session."""

    session: Session
    events: list[SessionEvent] = Field(default_factory=list)
    duration_summary: DurationSummary
    task_summaries: list[TaskSummary] = Field(default_factory=list)
    project_summaries: list[ProjectSummary] = Field(default_factory=list)


class SessionListItem(BaseModel):
    """A session with its derived durations attached."""

    session: Session
    duration_summary: DurationSummary


class TaskSessionMetadata(BaseModel):
    """Cross-session statistics for one task."""

    total_tracked_ms: int = 0
    total_paused_ms: int = 0
    pause_count: int = 0
    session_count: int = 0
    last_session_at: int | None = None
    last_session_task_duration_ms: int = 0
