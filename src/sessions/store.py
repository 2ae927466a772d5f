"""JSON-backed session and event store.

Sessions and their event logs live in a single JSON file, loaded on init
and saved once per committed unit of work.  A store created without a
directory keeps everything in memory.

Writes go through ``transaction()``: the unit holds a re-entrant lock,
snapshots in-memory state, and restores the snapshot if anything inside
raises, so a failed write never leaves a partial event or a half-updated
session behind.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import BaseModel, Field

from devsuite.errors import ActiveSessionExists, NotFound, OrderingViolation, ValidationError
from devsuite.sessions.lifecycle import is_open
from devsuite.sessions.models import Session, SessionEvent, SessionStatus

logger = logging.getLogger(__name__)

STORE_FILENAME = ".devsuite-sessions.json"


class _StoreData(BaseModel):
    """Internal wrapper for JSON serialization."""

    sessions: list[Session] = Field(default_factory=list)
    events: list[SessionEvent] = Field(default_factory=list)


_Snapshot = tuple[dict[str, Session], dict[str, list[SessionEvent]]]


class SessionStore:
    """Append-only event log plus the session rows it belongs to.

    Internal indices:
    - ``_sessions``: session_id -> Session
    - ``_events``: session_id -> events in append order
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self._path = data_dir / STORE_FILENAME if data_dir is not None else None
        self._lock = threading.RLock()
        self._depth = 0
        self._sessions: dict[str, Session] = {}
        self._events: dict[str, list[SessionEvent]] = {}
        if self._path is not None:
            self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    # ── Private helpers ──────────────────────────────────────────

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            data = _StoreData.model_validate(raw)
        except (json.JSONDecodeError, ValueError, KeyError):
            logger.warning("Corrupt session store at %s, starting fresh", self._path)
            return
        for session in data.sessions:
            self._sessions[session.id] = session
            self._events.setdefault(session.id, [])
        for event in data.events:
            if event.session_id not in self._sessions:
                logger.warning("Dropping event %s for unknown session %s", event.id, event.session_id)
                continue
            self._events[event.session_id].append(event)
        logger.info("Loaded %d session(s) from %s", len(self._sessions), self._path)

    def _save(self) -> None:
        if self._path is None:
            return
        data = _StoreData(
            sessions=list(self._sessions.values()),
            events=[e for events in self._events.values() for e in events],
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(data.model_dump_json(indent=2), encoding="utf-8")

    def _snapshot(self) -> _Snapshot:
        # Events are frozen, so copying the lists is enough.
        sessions = {sid: s.model_copy(deep=True) for sid, s in self._sessions.items()}
        events = {sid: list(evs) for sid, evs in self._events.items()}
        return sessions, events

    def _restore(self, snapshot: _Snapshot) -> None:
        self._sessions, self._events = snapshot

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    # ── Unit of work ─────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[SessionStore]:
        """All-or-nothing write scope; nested scopes join the outer one."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = self._snapshot()
            self._depth = 1
            try:
                yield self
                self._save()
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._depth = 0

    # ── Write operations ─────────────────────────────────────────

    def insert_session(self, session: Session) -> None:
        """Add a new session row.

        Raises ActiveSessionExists if ``session`` is open and the actor
        already has another open session in the tenant.
        """
        with self.transaction():
            if session.id in self._sessions:
                raise ValidationError(f"Session {session.id} already exists")
            if is_open(session.status) and session.deleted_at is None:
                existing = self.find_active_session(session.tenant_id, session.actor_id)
                if existing is not None:
                    raise ActiveSessionExists(
                        f"An active session already exists for this actor ({existing.id})"
                    )
            self._sessions[session.id] = session
            self._events[session.id] = []

    def update_session(self, session: Session) -> None:
        """Replace an existing session row.

        Raises NotFound if the session does not exist.
        """
        with self.transaction():
            self._require(session.id)
            self._sessions[session.id] = session

    def append_event(self, event: SessionEvent) -> SessionEvent:
        """Append ``event`` to its session's log.

        The timestamp must be strictly greater than the last event's, or at
        least the session's ``start_at`` when the log is empty.

        Raises NotFound for an unknown session and OrderingViolation when
        the timestamp does not advance the log.
        """
        with self.transaction():
            session = self._require(event.session_id)
            last = self.last_event_timestamp(session.id)
            if last is None:
                if event.timestamp < session.start_at:
                    raise OrderingViolation(
                        f"Event at {event.timestamp} precedes session start {session.start_at}"
                    )
            elif event.timestamp <= last:
                raise OrderingViolation(
                    f"Event at {event.timestamp} does not follow last event at {last}"
                )
            self._events[session.id].append(event)
            logger.debug("Appended %s to session %s at %d", event.type, session.id, event.timestamp)
            return event

    # ── Read operations ──────────────────────────────────────────

    def get_session(self, session_id: str) -> Session | None:
        """Return a session by id, or None if not found."""
        return self._sessions.get(session_id)

    def list_sessions(
        self,
        tenant_id: str,
        actor_id: str | None = None,
        status: SessionStatus | None = None,
        include_deleted: bool = False,
    ) -> list[Session]:
        """Return a tenant's sessions, newest start first."""
        results = [s for s in self._sessions.values() if s.tenant_id == tenant_id]
        if actor_id is not None:
            results = [s for s in results if s.actor_id == actor_id]
        if status is not None:
            results = [s for s in results if s.status == status]
        if not include_deleted:
            results = [s for s in results if s.deleted_at is None]
        return sorted(results, key=lambda s: (s.start_at, s.id), reverse=True)

    def find_active_session(self, tenant_id: str, actor_id: str) -> Session | None:
        """Return the actor's RUNNING session, else PAUSED, else None."""
        for status in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            found = self.list_sessions(tenant_id, actor_id, status=status)
            if found:
                return found[0]
        return None

    def list_events(self, session_id: str) -> list[SessionEvent]:
        """Return a session's events in append order."""
        return list(self._events.get(session_id, []))

    def last_event_timestamp(self, session_id: str) -> int | None:
        events = self._events.get(session_id)
        if not events:
            return None
        return events[-1].timestamp

    def find_task_events(self, tenant_id: str, task_id: str) -> list[SessionEvent]:
        """Return every event referencing ``task_id`` in the tenant, newest first."""
        matches = [
            e
            for events in self._events.values()
            for e in events
            if e.tenant_id == tenant_id and e.task_id == task_id
        ]
        return sorted(matches, key=lambda e: e.timestamp, reverse=True)

    def session_count(self) -> int:
        return len(self._sessions)
