"""Session table, lifecycle and the locked mutation path.

Every write goes through :meth:`SessionRegistry.mutate`, which runs an action
under the session's own lock, versions and publishes whatever the action
emitted, refreshes the expiry deadline and checks invariants. Inserts and
deletes of whole sessions (and the capacity counter) use the coarser table
lock. Lock order is always table -> session.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from ..poker.events import CapacityChanged, Change, SessionEnded, SessionEvent
from ..poker.models import CapacityStatus, Participant, Session, SessionStatus
from ..poker.results import ErrorKind, Result
from .broadcaster import EventBroadcaster
from .capacity import CapacityGuard
from .metrics import log_metric

log = logging.getLogger("planning_poker")
_T = TypeVar("_T")

_DEFAULT_IDLE_TIMEOUT = 600.0
_DEFAULT_MAX_PARTICIPANTS = 16


def new_participant_id() -> str:
    return uuid.uuid4().hex[:12]


class Changeset:
    """Collects what an action changed while it holds the session lock."""

    def __init__(self, now: float) -> None:
        self.now = now
        self.events: list[SessionEvent] = []
        self.expire_reason: str | None = None

    def emit(self, event: SessionEvent) -> None:
        self.events.append(event)

    def expire(self, reason: str) -> None:
        if self.expire_reason is None:
            self.expire_reason = reason
            self.events.append(SessionEnded(reason=reason))


Action = Callable[[Session, Changeset], Result[_T]]


@dataclass
class _Entry:
    session: Session
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionRegistry:
    def __init__(
        self,
        broadcaster: EventBroadcaster,
        capacity: CapacityGuard,
        idle_timeout: float = _DEFAULT_IDLE_TIMEOUT,
        max_participants: int = _DEFAULT_MAX_PARTICIPANTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.broadcaster = broadcaster
        self.capacity = capacity
        self.idle_timeout = idle_timeout
        self.max_participants = max_participants
        self.clock = clock
        self._sessions: dict[str, _Entry] = {}
        self._table_lock = asyncio.Lock()
        self._teardown_hooks: list[Callable[[str], None]] = []

    def on_teardown(self, hook: Callable[[str], None]) -> None:
        """Register a callback run after a session leaves the table."""
        self._teardown_hooks.append(hook)

    def __len__(self) -> int:
        return len(self._sessions)

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    # -- lifecycle ----------------------------------------------------------

    async def create_session(self, name: str, creator_name: str, creator_avatar: str = "") -> Result[Session]:
        # Free slots held by sessions that lapsed since the last sweep.
        await self.sweep_expired()
        async with self._table_lock:
            admitted = self.capacity.try_admit()
            if not admitted.ok:
                status = self.capacity.status()
                log.info("session creation rejected: %d/%d active", status.active, status.max)
                log_metric("capacity_rejected", active=status.active, max=status.max)
                return Result.failure(ErrorKind.CAPACITY_EXCEEDED, admitted.message)
            now = self.clock()
            creator = Participant(
                id=new_participant_id(),
                name=creator_name,
                avatar=creator_avatar,
                joined_at=now,
                last_seen=now,
            )
            session_id = secrets.token_urlsafe(8)
            while session_id in self._sessions:
                session_id = secrets.token_urlsafe(8)
            session = Session(
                id=session_id,
                name=name,
                created_at=now,
                last_activity=now,
                expires_at=now + self.idle_timeout,
                facilitator_id=creator.id,
                participants={creator.id: creator},
            )
            self._sessions[session.id] = _Entry(session)
            status = self.capacity.status()
        log.info("session %s created by %s (%d/%d active)", session.id, creator.id, status.active, status.max)
        log_metric("session_created", session_id=session.id, active=status.active)
        self._publish_capacity(status)
        return Result.success(session)

    async def get_session(self, session_id: str) -> Result[Session]:
        return await self.read(session_id, Result.success)

    async def touch_activity(self, session_id: str) -> Result[None]:
        def _touch(session: Session, changes: Changeset) -> Result[None]:
            self._touch(session, changes.now)
            return Result.success()

        return await self.mutate(session_id, _touch)

    async def destroy_session(self, session_id: str, requester_id: str) -> Result[None]:
        def _destroy(session: Session, changes: Changeset) -> Result[None]:
            if not session.is_facilitator(requester_id):
                return Result.failure(ErrorKind.FORBIDDEN, "Only the facilitator can end the session")
            changes.expire("closed")
            return Result.success()

        return await self.mutate(session_id, _destroy)

    async def sweep_expired(self) -> int:
        """Remove every session whose deadline has passed. Returns how many went."""
        lapsed = [sid for sid, entry in list(self._sessions.items()) if self._is_expired(entry.session)]
        removed = 0
        for sid in lapsed:
            if await self.expire_session(sid, "expired"):
                removed += 1
        if removed:
            log.info("sweep removed %d expired session(s)", removed)
        return removed

    async def expire_session(self, session_id: str, reason: str) -> bool:
        """Force a session to end: notify subscribers, then tear it down."""
        entry = self._sessions.get(session_id)
        if entry is None:
            return False
        async with entry.lock:
            if self._sessions.get(session_id) is not entry:
                return False
            session = entry.session
            if session.status is not SessionStatus.EXPIRED:
                changes = Changeset(self.clock())
                changes.expire(reason)
                self._commit(session, changes)
        return await self._remove(session_id, reason)

    # -- locked access ------------------------------------------------------

    async def read(self, session_id: str, fn: Callable[[Session], Result[_T]]) -> Result[_T]:
        """Run a read-only callback under the session lock."""
        entry = self._sessions.get(session_id)
        if entry is None:
            return Result.failure(ErrorKind.SESSION_NOT_FOUND)
        async with entry.lock:
            if self._sessions.get(session_id) is not entry:
                return Result.failure(ErrorKind.SESSION_NOT_FOUND)
            if self._is_expired(entry.session):
                return Result.failure(ErrorKind.SESSION_EXPIRED)
            return fn(entry.session)

    async def mutate(self, session_id: str, action: Action[_T]) -> Result[_T]:
        entry = self._sessions.get(session_id)
        if entry is None:
            return Result.failure(ErrorKind.SESSION_NOT_FOUND)
        async with entry.lock:
            if self._sessions.get(session_id) is not entry:
                return Result.failure(ErrorKind.SESSION_NOT_FOUND)
            session = entry.session
            if self._is_expired(session):
                return Result.failure(ErrorKind.SESSION_EXPIRED)
            changes = Changeset(self.clock())
            result = action(session, changes)
            if changes.events:
                self._commit(session, changes)
            if changes.expire_reason is None:
                violation = self._invariant_violation(session)
                if violation:
                    log.error("session %s invariant violated: %s; forcing expiry", session.id, violation)
                    changes = Changeset(self.clock())
                    changes.expire("invariant_violation")
                    self._commit(session, changes)
            reason = changes.expire_reason
        if reason is not None:
            await self._remove(session_id, reason)
        return result

    def capacity_status(self) -> CapacityStatus:
        return self.capacity.status()

    # -- internals ----------------------------------------------------------

    def _commit(self, session: Session, changes: Changeset) -> None:
        for event in changes.events:
            session.version += 1
            self.broadcaster.publish(Change(session.id, session.version, event, changes.now))
        if changes.expire_reason is not None:
            session.status = SessionStatus.EXPIRED
            session.expires_at = changes.now
            session.grace = None
        else:
            self._touch(session, changes.now)
        changes.events = []

    def _touch(self, session: Session, now: float) -> None:
        session.last_activity = now
        session.expires_at = now + self.idle_timeout

    def _is_expired(self, session: Session) -> bool:
        return session.status is SessionStatus.EXPIRED or self.clock() > session.expires_at

    def _invariant_violation(self, session: Session) -> str | None:
        if not session.participants:
            if session.facilitator_id is not None:
                return "facilitator set on a session with no participants"
            return "live session has no participants"
        if session.facilitator_id not in session.participants:
            return "facilitator is not a participant"
        if len(session.participants) > self.max_participants:
            return f"{len(session.participants)} participants exceed the limit of {self.max_participants}"
        if (session.grace is not None) != (session.status is SessionStatus.PAUSED):
            return "grace period and paused status disagree"
        return None

    async def _remove(self, session_id: str, reason: str) -> bool:
        async with self._table_lock:
            entry = self._sessions.pop(session_id, None)
            if entry is None:
                return False
            self.capacity.release()
            status = self.capacity.status()
        for hook in self._teardown_hooks:
            try:
                hook(session_id)
            except Exception:
                log.exception("teardown hook failed for session %s", session_id)
        self.broadcaster.close_session(session_id)
        log.info("session %s removed (%s); %d/%d active", session_id, reason, status.active, status.max)
        log_metric("session_removed", session_id=session_id, reason=reason, active=status.active)
        self._publish_capacity(status)
        return True

    def _publish_capacity(self, status: CapacityStatus) -> None:
        event = CapacityChanged(active=status.active, max=status.max, at_capacity=status.at_capacity)
        self.broadcaster.publish_all(Change(None, None, event, self.clock()))
