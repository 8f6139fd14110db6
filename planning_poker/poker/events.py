from __future__ import annotations

from dataclasses import dataclass

from .models import VoteStatistics


@dataclass
class SessionEvent:
    """Base class for session change events."""


@dataclass
class ParticipantJoined(SessionEvent):
    participant_id: str
    name: str
    avatar: str


@dataclass
class ParticipantLeft(SessionEvent):
    participant_id: str
    reason: str  # "left" | "kicked"


@dataclass
class PresenceChanged(SessionEvent):
    participant_id: str
    connected: bool


@dataclass
class VoteCast(SessionEvent):
    """Presence-only signal; the value stays hidden until reveal."""
    participant_id: str


@dataclass
class VotesRevealed(SessionEvent):
    round_id: str
    votes: dict[str, str]
    statistics: VoteStatistics


@dataclass
class RoundStarted(SessionEvent):
    round_id: str
    topic: str


@dataclass
class RoundReset(SessionEvent):
    round_id: str | None


@dataclass
class FacilitatorChanged(SessionEvent):
    previous_id: str | None
    facilitator_id: str
    reason: str  # "transfer" | "left" | "kicked" | "grace_period_expired"
    status: str


@dataclass
class GracePeriodStarted(SessionEvent):
    facilitator_id: str
    deadline: float
    candidate_id: str | None


@dataclass
class GracePeriodWarning(SessionEvent):
    facilitator_id: str
    deadline: float
    seconds_remaining: float


@dataclass
class GracePeriodEnded(SessionEvent):
    facilitator_id: str
    reason: str  # "facilitator_returned" | "facilitator_left"
    status: str


@dataclass
class SessionEnded(SessionEvent):
    reason: str  # "closed" | "expired" | "empty" | "no_connected_participants" | "invariant_violation"


@dataclass
class CapacityChanged(SessionEvent):
    """Process-wide; fanned out to every subscriber, never versioned."""
    active: int
    max: int
    at_capacity: bool


@dataclass
class Change:
    """A versioned event as it travels to subscribers."""
    session_id: str | None
    version: int | None
    event: SessionEvent
    created_at: float
