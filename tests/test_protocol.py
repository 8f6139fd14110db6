import pytest

from planning_poker.poker.events import CapacityChanged, Change, ParticipantLeft, VoteCast
from planning_poker.server.protocol import change_to_dict, snapshot, state_checksum


class TestChangeToDict:
    def test_common_fields(self):
        change = Change("s1", 7, VoteCast(participant_id="p1"), 0.0)
        data = change_to_dict(change)
        assert data == {
            "type": "vote_cast",
            "participant_id": "p1",
            "session_id": "s1",
            "version": 7,
            "created_at": "1970-01-01T00:00:00+00:00",
        }

    def test_kick_has_its_own_type(self):
        kicked = change_to_dict(Change("s1", 3, ParticipantLeft("p2", "kicked"), 0.0))
        left = change_to_dict(Change("s1", 3, ParticipantLeft("p2", "left"), 0.0))
        assert kicked["type"] == "participant_kicked"
        assert left["type"] == "participant_left"
        assert left["reason"] == "left"

    def test_capacity_notice_is_unversioned(self):
        data = change_to_dict(Change(None, None, CapacityChanged(3, 3, True), 0.0))
        assert data["type"] == "capacity_changed"
        assert data["at_capacity"] is True
        assert data["session_id"] is None
        assert data["version"] is None


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_votes_hidden_until_reveal(self, make_coordinator):
        coord = make_coordinator()
        session = (await coord.registry.create_session("Sprint", "alice", "fox")).value
        alice = session.facilitator_id
        bob = (await coord.membership.join(session.id, "bob")).value.id
        await coord.voting.start_round(session.id, alice, "Search")
        await coord.voting.submit_vote(session.id, bob, 5)

        as_alice = snapshot(session, alice)
        assert as_alice["status"] == "voting"
        assert as_alice["round"]["topic"] == "Search"
        assert as_alice["round"]["votes"] == {}
        assert as_alice["round"]["voted"] == [bob]
        flags = {p["id"]: p["has_voted"] for p in as_alice["participants"]}
        assert flags == {alice: False, bob: True}
        assert snapshot(session, bob)["round"]["votes"] == {bob: "5"}
        assert snapshot(session)["round"]["votes"] == {}

        await coord.voting.reveal_votes(session.id, alice)
        revealed = snapshot(session, alice)
        assert revealed["round"]["votes"] == {bob: "5"}
        assert revealed["round"]["statistics"]["mean"] == 5

    @pytest.mark.asyncio
    async def test_snapshot_carries_version_and_checksum(self, make_coordinator):
        coord = make_coordinator()
        session = (await coord.registry.create_session("Sprint", "alice", "fox")).value
        data = snapshot(session, session.facilitator_id)
        assert data["version"] == session.version
        assert data["facilitator_id"] == session.facilitator_id
        assert data["participants"][0]["avatar"] == "fox"
        assert data["participants"][0]["connection"] == "connected"
        assert data["grace_period"] is None
        assert data["checksum"] == state_checksum(session, session.facilitator_id)


class TestChecksum:
    @pytest.mark.asyncio
    async def test_ignores_timestamps(self, make_coordinator, clock):
        coord = make_coordinator()
        session = (await coord.registry.create_session("Sprint", "alice")).value
        before = state_checksum(session)
        clock.advance(30)
        await coord.registry.touch_activity(session.id)
        assert state_checksum(session) == before

    @pytest.mark.asyncio
    async def test_changes_with_state(self, make_coordinator):
        coord = make_coordinator()
        session = (await coord.registry.create_session("Sprint", "alice")).value
        before = state_checksum(session)
        await coord.membership.join(session.id, "bob")
        assert state_checksum(session) != before
        assert len(before) == 16

    @pytest.mark.asyncio
    async def test_depends_on_viewer_before_reveal(self, make_coordinator):
        coord = make_coordinator()
        session = (await coord.registry.create_session("Sprint", "alice")).value
        alice = session.facilitator_id
        bob = (await coord.membership.join(session.id, "bob")).value.id
        await coord.voting.start_round(session.id, alice)
        await coord.voting.submit_vote(session.id, bob, 8)
        assert state_checksum(session, alice) != state_checksum(session, bob)
