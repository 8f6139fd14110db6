from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def iso(ts: float | None) -> str | None:
    """Render an epoch timestamp as an ISO-8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class SessionStatus(Enum):
    """Lifecycle phases of an estimation session."""

    WAITING = "waiting"
    VOTING = "voting"
    REVEALED = "revealed"
    PAUSED = "paused"
    EXPIRED = "expired"


class ConnectionState(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class VoteValue(Enum):
    """The fixed card deck. PAUSE is the only non-numeric card."""

    ONE = "1"
    TWO = "2"
    THREE = "3"
    FIVE = "5"
    EIGHT = "8"
    THIRTEEN = "13"
    TWENTY_ONE = "21"
    PAUSE = "pause"

    @property
    def numeric(self) -> int | None:
        if self is VoteValue.PAUSE:
            return None
        return int(self.value)

    @classmethod
    def parse(cls, raw: object) -> VoteValue | None:
        """Accept a card as int, numeric string or "pause" (any case)."""
        if isinstance(raw, VoteValue):
            return raw
        if isinstance(raw, bool):
            return None
        if isinstance(raw, int):
            raw = str(raw)
        if not isinstance(raw, str):
            return None
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return None


@dataclass
class Participant:
    id: str
    name: str
    avatar: str
    joined_at: float
    last_seen: float
    connection: ConnectionState = ConnectionState.CONNECTED

    @property
    def is_connected(self) -> bool:
        return self.connection is ConnectionState.CONNECTED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "avatar": self.avatar,
            "connection": self.connection.value,
            "joined_at": iso(self.joined_at),
            "last_seen": iso(self.last_seen),
        }


@dataclass
class Vote:
    participant_id: str
    value: VoteValue
    submitted_at: float


@dataclass
class VoteStatistics:
    """Derived from a revealed round; never stored on its own."""

    mean: float | None
    distribution: dict[str, int]
    consensus: bool
    pause_count: int
    total_votes: int
    total_eligible: int

    def to_dict(self) -> dict:
        return {
            "mean": self.mean,
            "distribution": dict(self.distribution),
            "consensus": self.consensus,
            "pause_count": self.pause_count,
            "total_votes": self.total_votes,
            "total_eligible": self.total_eligible,
        }


@dataclass
class VotingRound:
    id: str
    started_at: float
    topic: str = ""
    votes: dict[str, Vote] = field(default_factory=dict)
    revealed: bool = False
    statistics: VoteStatistics | None = None


@dataclass
class GracePeriod:
    """Pause window opened when the facilitator drops off unexpectedly."""

    facilitator_id: str
    started_at: float
    deadline: float
    candidate_id: str | None
    resume_status: SessionStatus


@dataclass
class Session:
    id: str
    name: str
    created_at: float
    last_activity: float
    expires_at: float
    facilitator_id: str | None
    participants: dict[str, Participant] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.WAITING
    round: VotingRound | None = None
    version: int = 1
    grace: GracePeriod | None = None

    def is_facilitator(self, participant_id: str) -> bool:
        return self.facilitator_id is not None and self.facilitator_id == participant_id

    def earliest_joined(self, *, exclude: str | None = None, connected_only: bool = True) -> Participant | None:
        """Longest-standing participant, optionally restricted to connected ones."""
        candidates = [
            p for p in self.participants.values()
            if p.id != exclude and (p.is_connected or not connected_only)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda p: p.joined_at)


@dataclass
class CapacityStatus:
    active: int
    max: int

    @property
    def at_capacity(self) -> bool:
        return self.active >= self.max

    def to_dict(self) -> dict:
        return {"active": self.active, "max": self.max, "at_capacity": self.at_capacity}
