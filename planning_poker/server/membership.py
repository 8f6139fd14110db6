from __future__ import annotations

import logging

from ..poker.events import FacilitatorChanged, ParticipantJoined, ParticipantLeft, PresenceChanged
from ..poker.models import ConnectionState, Participant, Session, SessionStatus
from ..poker.results import ErrorKind, Result
from .grace import GracePeriodSupervisor
from .registry import Changeset, SessionRegistry, new_participant_id

log = logging.getLogger("planning_poker")


class MembershipManager:
    def __init__(self, registry: SessionRegistry, grace: GracePeriodSupervisor) -> None:
        self.registry = registry
        self.grace = grace

    @property
    def max_participants(self) -> int:
        return self.registry.max_participants

    async def join(self, session_id: str, name: str, avatar: str = "") -> Result[Participant]:
        def _join(session: Session, changes: Changeset) -> Result[Participant]:
            if len(session.participants) >= self.max_participants:
                return Result.failure(
                    ErrorKind.SESSION_FULL,
                    f"Session already has {self.max_participants} participants",
                )
            participant = Participant(
                id=new_participant_id(),
                name=name,
                avatar=avatar,
                joined_at=changes.now,
                last_seen=changes.now,
            )
            session.participants[participant.id] = participant
            self.grace.refresh_candidate(session)
            changes.emit(ParticipantJoined(participant.id, participant.name, participant.avatar))
            log.info("session %s: %s joined (%d/%d)", session.id, participant.id,
                     len(session.participants), self.max_participants)
            return Result.success(participant)

        return await self.registry.mutate(session_id, _join)

    async def leave(self, session_id: str, participant_id: str) -> Result[None]:
        def _leave(session: Session, changes: Changeset) -> Result[None]:
            if participant_id not in session.participants:
                return Result.failure(ErrorKind.PARTICIPANT_NOT_FOUND)
            self._remove(session, changes, participant_id, reason="left")
            return Result.success()

        result = await self.registry.mutate(session_id, _leave)
        if result.ok:
            self._close_streams(session_id, participant_id)
        return result

    async def transfer_facilitator(self, session_id: str, current_id: str, target_id: str) -> Result[None]:
        def _transfer(session: Session, changes: Changeset) -> Result[None]:
            if session.status is SessionStatus.PAUSED:
                return Result.failure(ErrorKind.SESSION_PAUSED)
            if not session.is_facilitator(current_id):
                return Result.failure(ErrorKind.FORBIDDEN, "Only the facilitator can hand over the role")
            target = session.participants.get(target_id)
            if target is None or target_id == current_id:
                return Result.failure(ErrorKind.INVALID_TRANSFER_TARGET, "Target is not another participant")
            if not target.is_connected:
                return Result.failure(ErrorKind.INVALID_TRANSFER_TARGET, "Target is not connected")
            session.facilitator_id = target_id
            changes.emit(FacilitatorChanged(current_id, target_id, "transfer", session.status.value))
            log.info("session %s facilitator transferred %s -> %s", session.id, current_id, target_id)
            return Result.success()

        return await self.registry.mutate(session_id, _transfer)

    async def evict(self, session_id: str, facilitator_id: str, target_id: str) -> Result[None]:
        def _evict(session: Session, changes: Changeset) -> Result[None]:
            if session.status is SessionStatus.PAUSED:
                return Result.failure(ErrorKind.SESSION_PAUSED)
            if not session.is_facilitator(facilitator_id):
                return Result.failure(ErrorKind.FORBIDDEN, "Only the facilitator can remove participants")
            if target_id == facilitator_id:
                return Result.failure(ErrorKind.FORBIDDEN, "The facilitator cannot kick themselves")
            if target_id not in session.participants:
                return Result.failure(ErrorKind.PARTICIPANT_NOT_FOUND)
            self._remove(session, changes, target_id, reason="kicked")
            return Result.success()

        result = await self.registry.mutate(session_id, _evict)
        if result.ok:
            self._close_streams(session_id, target_id)
        return result

    async def mark_disconnected(self, session_id: str, participant_id: str) -> Result[None]:
        def _disconnect(session: Session, changes: Changeset) -> Result[None]:
            participant = session.participants.get(participant_id)
            if participant is None:
                return Result.failure(ErrorKind.PARTICIPANT_NOT_FOUND)
            if not participant.is_connected:
                return Result.success()
            participant.connection = ConnectionState.DISCONNECTED
            participant.last_seen = changes.now
            changes.emit(PresenceChanged(participant_id, connected=False))
            if session.is_facilitator(participant_id):
                self.grace.begin(session, changes)
            else:
                self.grace.refresh_candidate(session)
            return Result.success()

        return await self.registry.mutate(session_id, _disconnect)

    async def mark_reconnected(self, session_id: str, participant_id: str) -> Result[None]:
        def _reconnect(session: Session, changes: Changeset) -> Result[None]:
            participant = session.participants.get(participant_id)
            if participant is None:
                return Result.failure(ErrorKind.PARTICIPANT_NOT_FOUND)
            participant.last_seen = changes.now
            if participant.is_connected:
                return Result.success()
            participant.connection = ConnectionState.CONNECTED
            changes.emit(PresenceChanged(participant_id, connected=True))
            grace = session.grace
            if grace is not None and grace.facilitator_id == participant_id:
                self.grace.end(session, changes, "facilitator_returned")
            else:
                self.grace.refresh_candidate(session)
            return Result.success()

        return await self.registry.mutate(session_id, _reconnect)

    def _remove(self, session: Session, changes: Changeset, participant_id: str, reason: str) -> None:
        was_facilitator = session.is_facilitator(participant_id)
        del session.participants[participant_id]
        current = session.round
        if current is not None and not current.revealed:
            current.votes.pop(participant_id, None)
        changes.emit(ParticipantLeft(participant_id, reason))
        log.info("session %s: %s %s", session.id, participant_id, reason)

        if not session.participants:
            session.facilitator_id = None
            self.grace.cancel(session.id)
            changes.expire("empty")
            return

        if was_facilitator:
            # Voluntary exits promote immediately; no grace period.
            successor = (
                session.earliest_joined(connected_only=True)
                or session.earliest_joined(connected_only=False)
            )
            session.facilitator_id = successor.id
            grace = session.grace
            if grace is not None and grace.facilitator_id == participant_id:
                self.grace.end(session, changes, "facilitator_left")
            changes.emit(FacilitatorChanged(participant_id, successor.id, reason, session.status.value))
            if not successor.is_connected:
                # Promoted while offline: the usual countdown decides whether they come back.
                self.grace.begin(session, changes)
        else:
            self.grace.refresh_candidate(session)

    def _close_streams(self, session_id: str, participant_id: str) -> None:
        """Stop delivery to a removed participant once their removal notice is queued."""
        closed = self.registry.broadcaster.close_participant(session_id, participant_id)
        if closed:
            log.debug("session %s: closed %d stream(s) of %s", session_id, closed, participant_id)
