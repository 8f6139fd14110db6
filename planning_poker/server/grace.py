from __future__ import annotations

import asyncio
import logging

from ..poker.events import FacilitatorChanged, GracePeriodEnded, GracePeriodStarted, GracePeriodWarning
from ..poker.models import GracePeriod, Session, SessionStatus
from ..poker.results import Result
from .metrics import log_metric
from .registry import Changeset, SessionRegistry

log = logging.getLogger("planning_poker")

_DEFAULT_GRACE_DURATION = 300.0
_DEFAULT_WARNING_LEAD = 60.0
_PAUSABLE = frozenset({SessionStatus.WAITING, SessionStatus.VOTING, SessionStatus.REVEALED})


class GracePeriodSupervisor:
    """Pauses a session when its facilitator drops and fails over on timeout.

    ``begin``/``end``/``refresh_candidate`` run inside registry actions, i.e.
    with the session lock held. The countdown task re-enters the registry
    through ``mutate`` and only acts if its token is still the pending one.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        duration: float = _DEFAULT_GRACE_DURATION,
        warning_lead: float = _DEFAULT_WARNING_LEAD,
    ) -> None:
        self.registry = registry
        self.duration = duration
        self.warning_lead = warning_lead
        self._timers: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, int] = {}
        self._next_token = 0
        registry.on_teardown(self.cancel)

    def is_pending(self, session_id: str) -> bool:
        return session_id in self._tokens

    def begin(self, session: Session, changes: Changeset) -> bool:
        """Open a grace period. A second disconnect while paused is a no-op."""
        if session.grace is not None or session.status not in _PAUSABLE:
            return False
        if session.facilitator_id is None:
            return False
        candidate = session.earliest_joined(exclude=session.facilitator_id)
        session.grace = GracePeriod(
            facilitator_id=session.facilitator_id,
            started_at=changes.now,
            deadline=changes.now + self.duration,
            candidate_id=candidate.id if candidate else None,
            resume_status=session.status,
        )
        session.status = SessionStatus.PAUSED
        changes.emit(GracePeriodStarted(
            facilitator_id=session.grace.facilitator_id,
            deadline=session.grace.deadline,
            candidate_id=session.grace.candidate_id,
        ))
        self._schedule(session.id)
        log.info(
            "session %s paused: facilitator %s disconnected, grace %.0fs",
            session.id, session.grace.facilitator_id, self.duration,
        )
        return True

    def end(self, session: Session, changes: Changeset, reason: str) -> None:
        """Close the grace period early and restore the pre-pause status."""
        grace = session.grace
        if grace is None:
            return
        self.cancel(session.id)
        session.status = grace.resume_status
        session.grace = None
        changes.emit(GracePeriodEnded(
            facilitator_id=grace.facilitator_id,
            reason=reason,
            status=session.status.value,
        ))
        log.info("session %s grace period ended (%s)", session.id, reason)

    def refresh_candidate(self, session: Session) -> None:
        grace = session.grace
        if grace is None:
            return
        candidate = session.earliest_joined(exclude=grace.facilitator_id)
        grace.candidate_id = candidate.id if candidate else None

    def cancel(self, session_id: str) -> None:
        """Drop the pending token; the countdown will find itself stale."""
        self._tokens.pop(session_id, None)
        task = self._timers.pop(session_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        self._tokens.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _schedule(self, session_id: str) -> None:
        self.cancel(session_id)
        self._next_token += 1
        token = self._next_token
        self._tokens[session_id] = token
        self._timers[session_id] = asyncio.create_task(
            self._countdown(session_id, token),
            name=f"grace-{session_id}",
        )

    async def _countdown(self, session_id: str, token: int) -> None:
        try:
            if 0 < self.warning_lead < self.duration:
                await asyncio.sleep(self.duration - self.warning_lead)
                if self._tokens.get(session_id) != token:
                    return
                await self.registry.mutate(session_id, lambda s, c: self._warn(s, c, token))
                await asyncio.sleep(self.warning_lead)
            else:
                await asyncio.sleep(self.duration)
            if self._tokens.get(session_id) != token:
                return
            await self.registry.mutate(session_id, lambda s, c: self._failover(s, c, token))
        finally:
            if self._timers.get(session_id) is asyncio.current_task():
                self._timers.pop(session_id, None)

    def _warn(self, session: Session, changes: Changeset, token: int) -> Result[None]:
        grace = session.grace
        if self._tokens.get(session.id) != token or grace is None:
            return Result.success()
        changes.emit(GracePeriodWarning(
            facilitator_id=grace.facilitator_id,
            deadline=grace.deadline,
            seconds_remaining=max(0.0, grace.deadline - changes.now),
        ))
        return Result.success()

    def _failover(self, session: Session, changes: Changeset, token: int) -> Result[None]:
        grace = session.grace
        if self._tokens.get(session.id) != token or grace is None:
            return Result.success()
        self._tokens.pop(session.id, None)
        # Re-evaluated now: the original candidate may have dropped too.
        successor = session.earliest_joined(exclude=grace.facilitator_id)
        if successor is None:
            log.info("session %s grace expired with nobody connected; ending session", session.id)
            changes.expire("no_connected_participants")
            return Result.success()
        session.facilitator_id = successor.id
        session.status = grace.resume_status
        session.grace = None
        changes.emit(FacilitatorChanged(
            previous_id=grace.facilitator_id,
            facilitator_id=successor.id,
            reason="grace_period_expired",
            status=session.status.value,
        ))
        log.info("session %s facilitator failover %s -> %s", session.id, grace.facilitator_id, successor.id)
        log_metric("grace_failover", session_id=session.id)
        return Result.success()
