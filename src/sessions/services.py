"""Session service — the operation surface for callers.

Every write runs as one unit of work on the ``SessionStore``: load the
session, check ownership and the state machine, append the event, and
update the row.  Any error raised along the way rolls the whole unit
back.  Reads load the full event log and re-derive durations each time.

The acting user is always an explicit argument; nothing here consults
ambient identity.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from devsuite.catalog.models import TaskStatus
from devsuite.catalog.store import CatalogStore
from devsuite.errors import AccessDenied, ActiveSessionExists, NotFound, ValidationError
from devsuite.sessions.derivation import derive_session_durations
from devsuite.sessions.lifecycle import SessionAction, next_status
from devsuite.sessions.models import (
    STEP_TEXT_MAX_LENGTH,
    SUMMARY_MAX_LENGTH,
    CancelMode,
    EmptyPayload,
    EventPayload,
    ProjectEventPayload,
    Session,
    SessionCancelledPayload,
    SessionDetail,
    SessionEvent,
    SessionEventType,
    SessionListItem,
    SessionStartedPayload,
    SessionStatus,
    StepLoggedPayload,
    TaskEventPayload,
    TaskSessionMetadata,
)
from devsuite.sessions.store import SessionStore
from devsuite.sessions.summaries import build_project_summaries, sort_task_summaries

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _require_id(value: str, name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{name} cannot be empty.")
    return value


def _clean_summary(summary: str | None) -> str | None:
    if summary is None:
        return None
    summary = summary.strip()
    if len(summary) > SUMMARY_MAX_LENGTH:
        raise ValidationError(f"Summary exceeds {SUMMARY_MAX_LENGTH} characters.")
    return summary


def parse_cancel_mode(mode: CancelMode | str) -> CancelMode:
    """Accept ``CancelMode`` values or their spellings such as ``keep-excluded``."""
    try:
        return CancelMode(str(mode).strip().upper().replace("-", "_"))
    except ValueError:
        allowed = ", ".join(m.value for m in CancelMode)
        raise ValidationError(f"Unsupported cancel mode {mode!r}; use one of {allowed}.") from None


def parse_status(status: SessionStatus | str | None) -> SessionStatus | None:
    if status is None:
        return None
    try:
        return SessionStatus(str(status).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown session status {status!r}.") from None


class SessionService:
    """Lifecycle, activity, and read operations over sessions."""

    def __init__(
        self,
        store: SessionStore,
        catalog: CatalogStore,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._clock = clock or wall_clock_ms

    # ── Private helpers ──────────────────────────────────────────

    def _load_for_write(self, tenant_id: str, actor_id: str, session_id: str) -> Session:
        session = self._store.get_session(session_id)
        if session is None or session.tenant_id != tenant_id:
            raise NotFound(f"Session {session_id} not found")
        if session.actor_id != actor_id:
            raise AccessDenied(f"Session {session_id} belongs to another actor")
        return session

    def _append(
        self,
        session: Session,
        event_type: SessionEventType,
        payload: EventPayload,
        now: int,
        client_timestamp: int | None,
    ) -> SessionEvent:
        event = SessionEvent(
            session_id=session.id,
            tenant_id=session.tenant_id,
            actor_id=session.actor_id,
            type=event_type,
            timestamp=now,
            client_timestamp=client_timestamp,
            payload=payload,
        )
        return self._store.append_event(event)

    def _transition(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        action: SessionAction,
        event_type: SessionEventType,
        payload: EventPayload,
        client_timestamp: int | None,
        now: int | None = None,
        changes: dict[str, object] | None = None,
    ) -> Session:
        now = self._clock() if now is None else now
        changes = changes or {}
        with self._store.transaction():
            session = self._load_for_write(tenant_id, actor_id, session_id)
            status = next_status(session.status, action)
            updated = session.model_copy(update={"status": status, "updated_at": now, **changes})
            self._append(updated, event_type, payload, now, client_timestamp)
            self._store.update_session(updated)
        logger.info("Session %s: %s -> %s", session_id, session.status, status)
        return updated

    def _task_event(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        task_id: str,
        action: SessionAction,
        event_type: SessionEventType,
        task_status: TaskStatus | None,
        client_timestamp: int | None,
    ) -> str:
        now = self._clock()
        with self._store.transaction():
            session = self._load_for_write(tenant_id, actor_id, session_id)
            next_status(session.status, action)
            self._catalog.require_task(tenant_id, task_id)
            self._append(session, event_type, TaskEventPayload(task_id=task_id), now, client_timestamp)
        # Catalog writes are not covered by the session rollback.
        if task_status is not None:
            self._catalog.set_task_status(tenant_id, task_id, task_status)
        logger.info("Session %s: %s %s", session_id, event_type, task_id)
        return session_id

    def _project_event(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        project_id: str,
        assign: bool,
        client_timestamp: int | None,
    ) -> str:
        action = SessionAction.ASSIGN_PROJECT if assign else SessionAction.UNASSIGN_PROJECT
        event_type = (
            SessionEventType.PROJECT_ASSIGNED_TO_SESSION
            if assign
            else SessionEventType.PROJECT_UNASSIGNED_FROM_SESSION
        )
        now = self._clock()
        with self._store.transaction():
            session = self._load_for_write(tenant_id, actor_id, session_id)
            next_status(session.status, action)
            self._catalog.require_project(tenant_id, project_id)
            if assign:
                project_ids = list(session.project_ids)
                if project_id not in project_ids:
                    project_ids.append(project_id)
            else:
                project_ids = [p for p in session.project_ids if p != project_id]
            self._append(
                session, event_type, ProjectEventPayload(project_id=project_id), now, client_timestamp
            )
            self._store.update_session(
                session.model_copy(update={"project_ids": project_ids, "updated_at": now})
            )
        logger.info("Session %s: %s %s", session_id, event_type, project_id)
        return session_id

    def _project_of(self, tenant_id: str) -> Callable[[str], str | None]:
        def lookup(task_id: str) -> str | None:
            task = self._catalog.get_task(task_id)
            if task is None or task.tenant_id != tenant_id:
                return None
            return task.project_id

        return lookup

    # ── Lifecycle ────────────────────────────────────────────────

    def start_session(
        self,
        tenant_id: str,
        actor_id: str,
        project_ids: list[str] | None = None,
        summary: str | None = None,
        client_timestamp: int | None = None,
    ) -> str:
        """Open a RUNNING session for the actor.

        Raises ActiveSessionExists if the actor already has a RUNNING or
        PAUSED session in the tenant, NotFound for unknown projects.
        """
        tenant_id = _require_id(tenant_id, "Tenant")
        actor_id = _require_id(actor_id, "Actor")
        summary = _clean_summary(summary)
        project_ids = list(dict.fromkeys(project_ids or []))

        now = self._clock()
        with self._store.transaction():
            existing = self._store.find_active_session(tenant_id, actor_id)
            if existing is not None:
                raise ActiveSessionExists(
                    f"An active session already exists for this actor ({existing.id})"
                )
            for project_id in project_ids:
                self._catalog.require_project(tenant_id, project_id)

            session = Session(
                tenant_id=tenant_id,
                actor_id=actor_id,
                status=SessionStatus.RUNNING,
                start_at=now,
                summary=summary,
                project_ids=project_ids,
                created_at=now,
                updated_at=now,
            )
            self._store.insert_session(session)
            self._append(
                session,
                SessionEventType.SESSION_STARTED,
                SessionStartedPayload(project_ids=project_ids),
                now,
                client_timestamp,
            )
        logger.info("Started session %s for %s in %s", session.id, actor_id, tenant_id)
        return session.id

    def pause_session(
        self, tenant_id: str, actor_id: str, session_id: str, client_timestamp: int | None = None
    ) -> str:
        self._transition(
            tenant_id,
            actor_id,
            session_id,
            SessionAction.PAUSE,
            SessionEventType.SESSION_PAUSED,
            EmptyPayload(),
            client_timestamp,
        )
        return session_id

    def resume_session(
        self, tenant_id: str, actor_id: str, session_id: str, client_timestamp: int | None = None
    ) -> str:
        self._transition(
            tenant_id,
            actor_id,
            session_id,
            SessionAction.RESUME,
            SessionEventType.SESSION_RESUMED,
            EmptyPayload(),
            client_timestamp,
        )
        return session_id

    def finish_session(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        summary: str | None = None,
        client_timestamp: int | None = None,
    ) -> str:
        """Finish the session, replacing its summary when one is given."""
        summary = _clean_summary(summary)
        changes: dict[str, object] = {}
        if summary is not None:
            changes["summary"] = summary
        self._finish_like(
            tenant_id,
            actor_id,
            session_id,
            SessionAction.FINISH,
            SessionEventType.SESSION_FINISHED,
            EmptyPayload(),
            client_timestamp,
            changes,
        )
        return session_id

    def cancel_session(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        mode: CancelMode | str,
        client_timestamp: int | None = None,
    ) -> str:
        """Cancel the session.

        ``KEEP_EXCLUDED`` keeps it visible but excluded from summaries;
        ``DISCARD`` also soft-deletes it so listings hide it by default.
        """
        cancel_mode = parse_cancel_mode(mode)
        self._finish_like(
            tenant_id,
            actor_id,
            session_id,
            SessionAction.CANCEL,
            SessionEventType.SESSION_CANCELLED,
            SessionCancelledPayload(cancel_mode=cancel_mode),
            client_timestamp,
            {"cancel_mode": cancel_mode},
        )
        return session_id

    def _finish_like(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        action: SessionAction,
        event_type: SessionEventType,
        payload: EventPayload,
        client_timestamp: int | None,
        changes: dict[str, object],
    ) -> None:
        now = self._clock()
        changes = {**changes, "end_at": now}
        if action == SessionAction.CANCEL:
            changes.update(cancelled_at=now, is_excluded_from_summaries=True)
            if changes["cancel_mode"] == CancelMode.DISCARD:
                changes.update(discarded_at=now, deleted_at=now)
        self._transition(
            tenant_id,
            actor_id,
            session_id,
            action,
            event_type,
            payload,
            client_timestamp,
            now=now,
            changes=changes,
        )

    # ── Activity ─────────────────────────────────────────────────

    def activate_task(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        task_id: str,
        client_timestamp: int | None = None,
    ) -> str:
        return self._task_event(
            tenant_id,
            actor_id,
            session_id,
            task_id,
            SessionAction.ACTIVATE_TASK,
            SessionEventType.TASK_ACTIVATED,
            None,
            client_timestamp,
        )

    def deactivate_task(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        task_id: str,
        client_timestamp: int | None = None,
    ) -> str:
        return self._task_event(
            tenant_id,
            actor_id,
            session_id,
            task_id,
            SessionAction.DEACTIVATE_TASK,
            SessionEventType.TASK_DEACTIVATED,
            None,
            client_timestamp,
        )

    def mark_task_done(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        task_id: str,
        client_timestamp: int | None = None,
    ) -> str:
        """Record completion and set the task's status to ``done``."""
        return self._task_event(
            tenant_id,
            actor_id,
            session_id,
            task_id,
            SessionAction.MARK_TASK_DONE,
            SessionEventType.TASK_MARKED_DONE,
            TaskStatus.DONE,
            client_timestamp,
        )

    def reset_task(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        task_id: str,
        client_timestamp: int | None = None,
    ) -> str:
        """Deactivate the task, clear its completion, and set it back to ``todo``."""
        return self._task_event(
            tenant_id,
            actor_id,
            session_id,
            task_id,
            SessionAction.RESET_TASK,
            SessionEventType.TASK_RESET,
            TaskStatus.TODO,
            client_timestamp,
        )

    def log_step(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        text: str,
        task_id: str | None = None,
        client_timestamp: int | None = None,
    ) -> str:
        """Append a free-text progress note, optionally tied to a task."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Step text cannot be empty.")
        if len(text) > STEP_TEXT_MAX_LENGTH:
            raise ValidationError(f"Step text exceeds {STEP_TEXT_MAX_LENGTH} characters.")

        now = self._clock()
        with self._store.transaction():
            session = self._load_for_write(tenant_id, actor_id, session_id)
            next_status(session.status, SessionAction.LOG_STEP)
            if task_id is not None:
                self._catalog.require_task(tenant_id, task_id)
            self._append(
                session,
                SessionEventType.STEP_LOGGED,
                StepLoggedPayload(text=text, task_id=task_id),
                now,
                client_timestamp,
            )
        return session_id

    def assign_project(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        project_id: str,
        client_timestamp: int | None = None,
    ) -> str:
        return self._project_event(
            tenant_id, actor_id, session_id, project_id, True, client_timestamp
        )

    def unassign_project(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        project_id: str,
        client_timestamp: int | None = None,
    ) -> str:
        return self._project_event(
            tenant_id, actor_id, session_id, project_id, False, client_timestamp
        )

    # ── Reads ────────────────────────────────────────────────────

    def get_active_session(self, tenant_id: str, actor_id: str) -> Session | None:
        """Return the actor's RUNNING or PAUSED session, if any."""
        return self._store.find_active_session(tenant_id, actor_id)

    def get_session(
        self,
        tenant_id: str,
        actor_id: str,
        session_id: str,
        include_discarded: bool = False,
    ) -> SessionDetail | None:
        """Load a session with its events and a fresh time reconstruction.

        Returns None for unknown sessions, sessions of another tenant, and
        discarded sessions unless ``include_discarded`` is set.  Raises
        AccessDenied for another actor's session.
        """
        session = self._store.get_session(session_id)
        if session is None or session.tenant_id != tenant_id:
            return None
        if session.actor_id != actor_id:
            raise AccessDenied(f"Session {session_id} belongs to another actor")
        if session.is_deleted and not include_discarded:
            return None

        events = self._store.list_events(session_id)
        duration_summary, task_summaries = derive_session_durations(
            session.status, session.start_at, session.end_at, events, self._clock()
        )
        task_list = sort_task_summaries(task_summaries.values())
        return SessionDetail(
            session=session,
            events=events,
            duration_summary=duration_summary,
            task_summaries=task_list,
            project_summaries=build_project_summaries(task_list, self._project_of(tenant_id)),
        )

    def list_sessions(
        self,
        tenant_id: str,
        actor_id: str,
        status: SessionStatus | str | None = None,
        include_discarded: bool = False,
    ) -> list[SessionListItem]:
        """Return the actor's sessions, newest first, each with its durations."""
        wanted = parse_status(status)
        now = self._clock()
        items: list[SessionListItem] = []
        for session in self._store.list_sessions(
            tenant_id, actor_id, status=wanted, include_deleted=include_discarded
        ):
            duration_summary, _ = derive_session_durations(
                session.status,
                session.start_at,
                session.end_at,
                self._store.list_events(session.id),
                now,
            )
            items.append(SessionListItem(session=session, duration_summary=duration_summary))
        return items

    def get_task_session_metadata(
        self, tenant_id: str, actor_id: str, task_id: str
    ) -> TaskSessionMetadata:
        """Aggregate a task's tracked time across the actor's sessions.

        Only non-discarded sessions with at least one event referencing the
        task count.  Raises NotFound if the task is not in the tenant.
        """
        self._catalog.require_task(tenant_id, task_id)

        # Events arrive newest first, so the first hit per session is its latest.
        last_task_event_at: dict[str, int] = {}
        for event in self._store.find_task_events(tenant_id, task_id):
            last_task_event_at.setdefault(event.session_id, event.timestamp)

        now = self._clock()
        metadata = TaskSessionMetadata()
        for session_id, last_at in last_task_event_at.items():
            session = self._store.get_session(session_id)
            if session is None or session.tenant_id != tenant_id:
                continue
            if session.actor_id != actor_id or session.is_deleted:
                continue

            events = self._store.list_events(session_id)
            duration_summary, task_summaries = derive_session_durations(
                session.status, session.start_at, session.end_at, events, now
            )
            task_summary = task_summaries.get(task_id)
            task_ms = task_summary.active_duration_ms if task_summary else 0

            span = max(0, (session.end_at if session.end_at is not None else now) - session.start_at)
            metadata.total_tracked_ms += task_ms
            metadata.total_paused_ms += max(0, span - duration_summary.effective_duration_ms)
            metadata.pause_count += sum(
                1 for e in events if e.type == SessionEventType.SESSION_PAUSED
            )
            metadata.session_count += 1
            if metadata.last_session_at is None or last_at > metadata.last_session_at:
                metadata.last_session_at = last_at
                metadata.last_session_task_duration_ms = task_ms
        return metadata
