from __future__ import annotations

import hashlib
import json

from ..poker.events import (
    CapacityChanged,
    Change,
    FacilitatorChanged,
    GracePeriodEnded,
    GracePeriodStarted,
    GracePeriodWarning,
    ParticipantJoined,
    ParticipantLeft,
    PresenceChanged,
    RoundReset,
    RoundStarted,
    SessionEnded,
    VoteCast,
    VotesRevealed,
)
from ..poker.models import Session, iso


def _event_body(change: Change) -> dict:
    match change.event:
        case ParticipantJoined(participant_id=pid, name=name, avatar=avatar):
            return {"type": "participant_joined", "participant_id": pid, "name": name, "avatar": avatar}
        case ParticipantLeft(participant_id=pid, reason="kicked"):
            return {"type": "participant_kicked", "participant_id": pid, "reason": "kicked"}
        case ParticipantLeft(participant_id=pid, reason=reason):
            return {"type": "participant_left", "participant_id": pid, "reason": reason}
        case PresenceChanged(participant_id=pid, connected=connected):
            return {"type": "presence_changed", "participant_id": pid, "connected": connected}
        case VoteCast(participant_id=pid):
            return {"type": "vote_cast", "participant_id": pid}
        case VotesRevealed(round_id=rid, votes=votes, statistics=stats):
            return {"type": "votes_revealed", "round_id": rid, "votes": votes, "statistics": stats.to_dict()}
        case RoundStarted(round_id=rid, topic=topic):
            return {"type": "round_started", "round_id": rid, "topic": topic}
        case RoundReset(round_id=rid):
            return {"type": "round_reset", "round_id": rid}
        case FacilitatorChanged(previous_id=prev, facilitator_id=fid, reason=reason, status=status):
            return {
                "type": "facilitator_changed", "previous_id": prev, "facilitator_id": fid,
                "reason": reason, "status": status,
            }
        case GracePeriodStarted(facilitator_id=fid, deadline=deadline, candidate_id=cid):
            return {"type": "grace_period_started", "facilitator_id": fid, "deadline": iso(deadline), "candidate_id": cid}
        case GracePeriodWarning(facilitator_id=fid, deadline=deadline, seconds_remaining=remaining):
            return {
                "type": "grace_period_warning", "facilitator_id": fid,
                "deadline": iso(deadline), "seconds_remaining": round(remaining, 1),
            }
        case GracePeriodEnded(facilitator_id=fid, reason=reason, status=status):
            return {"type": "grace_period_ended", "facilitator_id": fid, "reason": reason, "status": status}
        case SessionEnded(reason=reason):
            return {"type": "session_ended", "reason": reason}
        case CapacityChanged(active=active, max=limit, at_capacity=full):
            return {"type": "capacity_changed", "active": active, "max": limit, "at_capacity": full}
        case _:
            return {"type": "unknown"}


def change_to_dict(change: Change) -> dict:
    body = _event_body(change)
    body["session_id"] = change.session_id
    body["version"] = change.version
    body["created_at"] = iso(change.created_at)
    return body


def _state(session: Session, viewer_id: str | None) -> dict:
    """Timestamp-free view of a session as seen by ``viewer_id``."""
    current = session.round
    round_state = None
    if current is not None:
        if current.revealed:
            votes = {pid: v.value.value for pid, v in current.votes.items()}
        else:
            own = current.votes.get(viewer_id) if viewer_id else None
            votes = {viewer_id: own.value.value} if own else {}
        round_state = {
            "id": current.id,
            "topic": current.topic,
            "revealed": current.revealed,
            "voted": sorted(current.votes),
            "votes": votes,
            "statistics": current.statistics.to_dict() if current.statistics else None,
        }
    return {
        "id": session.id,
        "name": session.name,
        "status": session.status.value,
        "version": session.version,
        "facilitator_id": session.facilitator_id,
        "participants": [
            {
                "id": p.id,
                "name": p.name,
                "avatar": p.avatar,
                "connection": p.connection.value,
                "has_voted": current is not None and p.id in current.votes,
            }
            for p in session.participants.values()
        ],
        "round": round_state,
        "grace_period": {
            "facilitator_id": session.grace.facilitator_id,
            "candidate_id": session.grace.candidate_id,
            "resume_status": session.grace.resume_status.value,
        } if session.grace else None,
    }


def state_checksum(session: Session, viewer_id: str | None = None) -> str:
    encoded = json.dumps(_state(session, viewer_id), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()[:16]


def snapshot(session: Session, viewer_id: str | None = None) -> dict:
    """Full session view. Vote values stay hidden from other viewers until reveal."""
    data = _state(session, viewer_id)
    joined = {p.id: p for p in session.participants.values()}
    for entry in data["participants"]:
        p = joined[entry["id"]]
        entry["joined_at"] = iso(p.joined_at)
        entry["last_seen"] = iso(p.last_seen)
    if data["round"] is not None and session.round is not None:
        data["round"]["started_at"] = iso(session.round.started_at)
    if data["grace_period"] is not None and session.grace is not None:
        data["grace_period"]["started_at"] = iso(session.grace.started_at)
        data["grace_period"]["deadline"] = iso(session.grace.deadline)
    data["created_at"] = iso(session.created_at)
    data["last_activity"] = iso(session.last_activity)
    data["expires_at"] = iso(session.expires_at)
    data["checksum"] = state_checksum(session, viewer_id)
    return data
