import asyncio

import pytest

from planning_poker.poker.models import ConnectionState, SessionStatus
from planning_poker.poker.results import ErrorKind


async def _session_with(coord, clock, *names):
    """Create a session owned by alice plus the given joiners, one second apart."""
    session = (await coord.registry.create_session("Sprint", "alice")).value
    members = {"alice": session.participants[session.facilitator_id]}
    for name in names:
        clock.advance(1)
        members[name] = (await coord.membership.join(session.id, name)).value
    return session, members


@pytest.mark.asyncio
async def test_join_appends_and_broadcasts(make_coordinator, clock):
    coord = make_coordinator()
    session, _ = await _session_with(coord, clock)
    sub = coord.broadcaster.subscribe(session.id, session.facilitator_id)
    result = await coord.membership.join(session.id, "bob", "owl")
    assert result.ok
    bob = result.value
    assert session.participants[bob.id] is bob
    assert bob.joined_at == clock.now
    changes = sub.drain()
    assert len(changes) == 1
    assert changes[0].event.participant_id == bob.id
    assert changes[0].event.avatar == "owl"
    assert changes[0].version == session.version == 2


@pytest.mark.asyncio
async def test_seventeenth_join_is_rejected(make_coordinator):
    coord = make_coordinator()
    session = (await coord.registry.create_session("Big team", "alice")).value
    for i in range(15):
        assert (await coord.membership.join(session.id, f"dev{i}")).ok
    assert len(session.participants) == 16
    version = session.version

    result = await coord.membership.join(session.id, "one-too-many")
    assert result.error is ErrorKind.SESSION_FULL
    assert len(session.participants) == 16
    assert session.version == version


@pytest.mark.asyncio
async def test_join_unknown_session(make_coordinator):
    coord = make_coordinator()
    result = await coord.membership.join("missing", "bob")
    assert result.error is ErrorKind.SESSION_NOT_FOUND


@pytest.mark.asyncio
async def test_leave_unknown_participant(make_coordinator, clock):
    coord = make_coordinator()
    session, _ = await _session_with(coord, clock)
    result = await coord.membership.leave(session.id, "stranger")
    assert result.error is ErrorKind.PARTICIPANT_NOT_FOUND


@pytest.mark.asyncio
async def test_facilitator_leave_promotes_longest_connected(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob", "carol", "dave")
    await coord.membership.mark_disconnected(session.id, m["bob"].id)
    sub = coord.broadcaster.subscribe(session.id, m["carol"].id)

    assert (await coord.membership.leave(session.id, m["alice"].id)).ok
    assert session.facilitator_id == m["carol"].id
    assert session.status is SessionStatus.WAITING
    assert session.grace is None
    events = [c.event for c in sub.drain()]
    assert [type(e).__name__ for e in events] == ["ParticipantLeft", "FacilitatorChanged"]
    assert events[1].reason == "left"
    assert events[1].previous_id == m["alice"].id


@pytest.mark.asyncio
async def test_facilitator_leave_falls_back_to_disconnected(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob")
    await coord.membership.mark_disconnected(session.id, m["bob"].id)
    assert (await coord.membership.leave(session.id, m["alice"].id)).ok
    assert session.facilitator_id == m["bob"].id
    # The offline successor gets the same grace period as a dropped facilitator.
    assert session.status is SessionStatus.PAUSED
    assert session.grace.facilitator_id == m["bob"].id
    assert coord.grace.is_pending(session.id)

    assert (await coord.membership.mark_reconnected(session.id, m["bob"].id)).ok
    assert session.status is SessionStatus.WAITING
    assert session.grace is None
    assert (await coord.voting.start_round(session.id, m["bob"].id)).ok
    await coord.stop()


@pytest.mark.asyncio
async def test_offline_successor_fails_over_to_later_joiner(make_coordinator, clock):
    coord = make_coordinator(grace_duration=0.05, grace_warning_lead=0)
    session, m = await _session_with(coord, clock, "bob")
    await coord.membership.mark_disconnected(session.id, m["bob"].id)
    assert (await coord.membership.leave(session.id, m["alice"].id)).ok
    clock.advance(1)
    carol = (await coord.membership.join(session.id, "carol")).value
    assert session.grace.candidate_id == carol.id

    await asyncio.sleep(0.3)
    assert session.facilitator_id == carol.id
    assert session.status is SessionStatus.WAITING
    assert (await coord.voting.start_round(session.id, carol.id)).ok
    await coord.stop()


@pytest.mark.asyncio
async def test_last_participant_leaving_ends_session_immediately(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock)
    sub = coord.broadcaster.subscribe(session.id, m["alice"].id)

    assert (await coord.membership.leave(session.id, m["alice"].id)).ok
    assert len(coord.registry) == 0
    assert coord.capacity.status().active == 0
    reasons = [c.event.reason for c in sub.drain() if type(c.event).__name__ == "SessionEnded"]
    assert reasons == ["empty"]
    assert (await coord.registry.get_session(session.id)).error is ErrorKind.SESSION_NOT_FOUND


@pytest.mark.asyncio
async def test_leaving_discards_unrevealed_vote(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob")
    await coord.voting.start_round(session.id, m["alice"].id)
    await coord.voting.submit_vote(session.id, m["bob"].id, 8)
    assert (await coord.membership.leave(session.id, m["bob"].id)).ok
    assert m["bob"].id not in session.round.votes


@pytest.mark.asyncio
async def test_transfer_facilitator(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob", "carol")

    denied = await coord.membership.transfer_facilitator(session.id, m["bob"].id, m["carol"].id)
    assert denied.error is ErrorKind.FORBIDDEN
    unknown = await coord.membership.transfer_facilitator(session.id, m["alice"].id, "ghost")
    assert unknown.error is ErrorKind.INVALID_TRANSFER_TARGET
    to_self = await coord.membership.transfer_facilitator(session.id, m["alice"].id, m["alice"].id)
    assert to_self.error is ErrorKind.INVALID_TRANSFER_TARGET
    assert session.facilitator_id == m["alice"].id

    sub = coord.broadcaster.subscribe(session.id, m["bob"].id)
    assert (await coord.membership.transfer_facilitator(session.id, m["alice"].id, m["bob"].id)).ok
    assert session.facilitator_id == m["bob"].id
    (change,) = sub.drain()
    assert change.event.reason == "transfer"
    assert change.event.facilitator_id == m["bob"].id


@pytest.mark.asyncio
async def test_transfer_to_disconnected_participant_rejected(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob")
    await coord.membership.mark_disconnected(session.id, m["bob"].id)
    result = await coord.membership.transfer_facilitator(session.id, m["alice"].id, m["bob"].id)
    assert result.error is ErrorKind.INVALID_TRANSFER_TARGET


@pytest.mark.asyncio
async def test_evict(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob", "carol")

    assert (await coord.membership.evict(session.id, m["bob"].id, m["carol"].id)).error is ErrorKind.FORBIDDEN
    assert (await coord.membership.evict(session.id, m["alice"].id, m["alice"].id)).error is ErrorKind.FORBIDDEN
    missing = await coord.membership.evict(session.id, m["alice"].id, "ghost")
    assert missing.error is ErrorKind.PARTICIPANT_NOT_FOUND

    sub = coord.broadcaster.subscribe(session.id, m["alice"].id)
    assert (await coord.membership.evict(session.id, m["alice"].id, m["carol"].id)).ok
    assert m["carol"].id not in session.participants
    (change,) = sub.drain()
    assert change.event.reason == "kicked"


@pytest.mark.asyncio
async def test_participant_disconnect_is_presence_only(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob")
    sub = coord.broadcaster.subscribe(session.id, m["alice"].id)

    assert (await coord.membership.mark_disconnected(session.id, m["bob"].id)).ok
    assert m["bob"].connection is ConnectionState.DISCONNECTED
    assert session.status is SessionStatus.WAITING
    assert not coord.grace.is_pending(session.id)
    (change,) = sub.drain()
    assert change.event.connected is False

    # Repeated disconnects are no-ops.
    assert (await coord.membership.mark_disconnected(session.id, m["bob"].id)).ok
    assert sub.drain() == []

    assert (await coord.membership.mark_reconnected(session.id, m["bob"].id)).ok
    assert m["bob"].is_connected
    (change,) = sub.drain()
    assert change.event.connected is True


@pytest.mark.asyncio
async def test_presence_for_unknown_participant(make_coordinator, clock):
    coord = make_coordinator()
    session, _ = await _session_with(coord, clock)
    assert (await coord.membership.mark_disconnected(session.id, "ghost")).error is ErrorKind.PARTICIPANT_NOT_FOUND
    assert (await coord.membership.mark_reconnected(session.id, "ghost")).error is ErrorKind.PARTICIPANT_NOT_FOUND


@pytest.mark.asyncio
async def test_evicted_participant_stops_receiving(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob", "carol")
    sub = (await coord.attach(session.id, m["bob"].id)).value

    assert (await coord.membership.evict(session.id, m["alice"].id, m["bob"].id)).ok
    assert sub.closed
    (change,) = sub.drain()
    assert change.event.participant_id == m["bob"].id
    assert change.event.reason == "kicked"

    await coord.voting.start_round(session.id, m["alice"].id)
    await coord.voting.submit_vote(session.id, m["carol"].id, 8)
    await coord.voting.reveal_votes(session.id, m["alice"].id)
    assert sub.drain() == []
    await coord.detach(sub)
    assert coord.broadcaster.subscriber_count(session.id) == 0


@pytest.mark.asyncio
async def test_leaving_closes_own_streams_only(make_coordinator, clock):
    coord = make_coordinator()
    session, m = await _session_with(coord, clock, "bob")
    mine = (await coord.attach(session.id, m["bob"].id)).value
    theirs = (await coord.attach(session.id, m["alice"].id)).value

    assert (await coord.membership.leave(session.id, m["bob"].id)).ok
    assert mine.closed
    assert [c.event.reason for c in mine.drain()] == ["left"]
    assert not theirs.closed

    await coord.voting.start_round(session.id, m["alice"].id)
    assert [type(c.event).__name__ for c in theirs.drain()] == ["ParticipantLeft", "RoundStarted"]
    assert mine.drain() == []
