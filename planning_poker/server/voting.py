"""Round state machine: Waiting -> Voting -> Revealed -> (new round | reset)."""

from __future__ import annotations

import logging
import uuid

from ..poker.events import RoundReset, RoundStarted, VoteCast, VotesRevealed
from ..poker.models import Session, SessionStatus, Vote, VoteStatistics, VoteValue, VotingRound
from ..poker.results import ErrorKind, Result
from ..poker.statistics import compute_statistics
from .registry import Changeset, SessionRegistry

log = logging.getLogger("planning_poker")


def _facilitator_check(session: Session, requester_id: str, action: str) -> Result[None] | None:
    if session.status is SessionStatus.PAUSED:
        return Result.failure(ErrorKind.SESSION_PAUSED, "Session is paused until the facilitator returns")
    if not session.is_facilitator(requester_id):
        return Result.failure(ErrorKind.FORBIDDEN, f"Only the facilitator can {action}")
    return None


class VotingCoordinator:
    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    async def start_round(self, session_id: str, facilitator_id: str, topic: str = "") -> Result[VotingRound]:
        def _start(session: Session, changes: Changeset) -> Result[VotingRound]:
            denied = _facilitator_check(session, facilitator_id, "start a round")
            if denied:
                return Result.failure(denied.error, denied.message)
            if session.status is SessionStatus.VOTING:
                return Result.failure(ErrorKind.ALREADY_VOTING, "A round is already open")
            new_round = VotingRound(id=uuid.uuid4().hex[:12], started_at=changes.now, topic=topic)
            session.round = new_round
            session.status = SessionStatus.VOTING
            changes.emit(RoundStarted(new_round.id, topic))
            log.info("session %s round %s started", session.id, new_round.id)
            return Result.success(new_round)

        return await self.registry.mutate(session_id, _start)

    async def submit_vote(self, session_id: str, participant_id: str, value: object) -> Result[None]:
        card = VoteValue.parse(value)

        def _vote(session: Session, changes: Changeset) -> Result[None]:
            if participant_id not in session.participants:
                return Result.failure(ErrorKind.PARTICIPANT_NOT_FOUND)
            if card is None:
                allowed = ", ".join(v.value for v in VoteValue)
                return Result.failure(ErrorKind.INVALID_VOTE_VALUE, f"Vote must be one of: {allowed}")
            if session.status is SessionStatus.PAUSED:
                return Result.failure(ErrorKind.SESSION_PAUSED, "Session is paused until the facilitator returns")
            current = session.round
            if current is not None and current.revealed:
                return Result.failure(ErrorKind.ALREADY_REVEALED, "Votes for this round are already revealed")
            if current is None or session.status is not SessionStatus.VOTING:
                return Result.failure(ErrorKind.NO_ACTIVE_ROUND)
            current.votes[participant_id] = Vote(participant_id, card, changes.now)
            changes.emit(VoteCast(participant_id))
            return Result.success()

        return await self.registry.mutate(session_id, _vote)

    async def reveal_votes(self, session_id: str, facilitator_id: str) -> Result[VoteStatistics]:
        def _reveal(session: Session, changes: Changeset) -> Result[VoteStatistics]:
            denied = _facilitator_check(session, facilitator_id, "reveal votes")
            if denied:
                return Result.failure(denied.error, denied.message)
            current = session.round
            if current is None:
                return Result.failure(ErrorKind.NO_ACTIVE_ROUND)
            if current.revealed:
                return Result.success(current.statistics)
            stats = compute_statistics(current.votes.values(), total_eligible=len(session.participants))
            current.revealed = True
            current.statistics = stats
            session.status = SessionStatus.REVEALED
            changes.emit(VotesRevealed(
                round_id=current.id,
                votes={pid: vote.value.value for pid, vote in current.votes.items()},
                statistics=stats,
            ))
            log.info(
                "session %s round %s revealed: %d/%d voted, consensus=%s",
                session.id, current.id, stats.total_votes, stats.total_eligible, stats.consensus,
            )
            return Result.success(stats)

        return await self.registry.mutate(session_id, _reveal)

    async def reset_round(self, session_id: str, facilitator_id: str) -> Result[None]:
        def _reset(session: Session, changes: Changeset) -> Result[None]:
            denied = _facilitator_check(session, facilitator_id, "reset the round")
            if denied:
                return denied
            if session.round is None and session.status is SessionStatus.WAITING:
                return Result.failure(ErrorKind.NO_ACTIVE_ROUND)
            round_id = session.round.id if session.round else None
            session.round = None
            session.status = SessionStatus.WAITING
            changes.emit(RoundReset(round_id))
            return Result.success()

        return await self.registry.mutate(session_id, _reset)
