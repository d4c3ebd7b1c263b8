import asyncio

from aiortc import RTCSessionDescription

from callengine.protocol import events
from callengine.protocol.schemas import CandidateModel, ParticipantInfo
from callengine.rtc.group import GroupCall
from callengine.rtc.peer_link import SignalingState

from fakes import RecordingTransport, make_factory


def make_group(self_id: str = "bob", **options):
    transport = RecordingTransport()
    factory, builder = make_factory(**options)
    hooked = []
    group = GroupCall("room-1", "group-1", self_id=self_id, transport=transport, factory=factory, on_link=hooked.append)
    return group, transport, builder, hooked


def test_new_member_gets_an_offer() -> None:
    async def scenario():
        group, transport, _builder, hooked = make_group()
        link = await group.add_participant("carol", ParticipantInfo(user_id="carol", display_name="Carol"))
        ignored = await group.add_participant("bob")
        return group, transport, hooked, link, ignored

    group, transport, hooked, link, ignored = asyncio.run(scenario())
    assert ignored is None
    assert hooked == [link]
    assert group.members["carol"].display_name == "Carol"
    offers = transport.sent_events(events.GROUP_OFFER)
    assert len(offers) == 1
    assert offers[0]["target_user_id"] == "carol"
    assert offers[0]["room_id"] == "room-1"
    assert link.signaling_state is SignalingState.HAVE_LOCAL_OFFER


def test_politeness_follows_user_id_order() -> None:
    async def scenario():
        group, _transport, _builder, _hooked = make_group("bob")
        await group.add_participant("alice")
        await group.add_participant("carol")
        return {link.remote_id: handler.polite for link, handler in group.targets()}

    assert asyncio.run(scenario()) == {"alice": False, "carol": True}


def test_offer_from_member_is_answered() -> None:
    async def scenario():
        group, transport, _builder, _hooked = make_group()
        candidate = CandidateModel(candidate="candidate:1 1 udp 2122260223 10.0.0.5 40000 typ host", sdp_mid="0")
        await group.handle_ice_candidate("alice", candidate)
        queued = len(group.links["alice"].ice_candidate_queue)
        await group.handle_offer("alice", RTCSessionDescription(sdp="offer-from-alice", type="offer"))
        return group, transport, queued

    group, transport, queued = asyncio.run(scenario())
    assert queued == 1
    link = group.links["alice"]
    assert link.signaling_state is SignalingState.STABLE
    assert len(link.connection.candidates) == 1
    answers = transport.sent_events(events.GROUP_ANSWER)
    assert [answer["target_user_id"] for answer in answers] == ["alice"]
    assert "alice" in group.members


def test_failure_on_one_link_does_not_touch_others() -> None:
    async def scenario():
        group, transport, builder, _hooked = make_group()
        await group.add_participant("carol")
        builder.options["fail_offer"] = True
        await group.add_participant("dave")
        await group.handle_answer("carol", RTCSessionDescription(sdp="answer-from-carol", type="answer"))
        await group.handle_answer("erin", RTCSessionDescription(sdp="stray", type="answer"))
        await group.handle_answer("carol", RTCSessionDescription(sdp="answer-from-carol", type="answer"))
        return group, transport

    group, transport = asyncio.run(scenario())
    assert group.links["carol"].signaling_state is SignalingState.STABLE
    assert group.links["dave"].signaling_state is SignalingState.STABLE
    assert group.links["dave"].offer_epoch == 0
    assert [offer["target_user_id"] for offer in transport.sent_events(events.GROUP_OFFER)] == ["carol"]


def test_participant_leaving_closes_only_its_link() -> None:
    async def scenario():
        group, _transport, _builder, _hooked = make_group()
        carol = await group.add_participant("carol")
        dave = await group.add_participant("dave")
        group.screen_sharers["carol"] = "track-1"
        await group.remove_participant("carol")
        remaining = sorted(group.links)
        await group.close()
        return carol, dave, remaining, group

    carol, dave, remaining, group = asyncio.run(scenario())
    assert remaining == ["dave"]
    assert carol.closed is True
    assert dave.closed is True
    assert group.links == {}
    assert group.members == {}
    assert group.screen_sharers == {}


def test_late_signaling_from_departed_member_is_dropped() -> None:
    async def scenario():
        group, transport, _builder, hooked = make_group()
        carol = await group.add_participant("carol")
        await group.remove_participant("carol")
        candidate = CandidateModel(candidate="candidate:1 1 udp 2122260223 10.0.0.7 40000 typ host", sdp_mid="0")
        await group.handle_ice_candidate("carol", candidate)
        await group.handle_offer("carol", RTCSessionDescription(sdp="late-offer", type="offer"))
        await group.handle_answer("carol", RTCSessionDescription(sdp="late-answer", type="answer"))
        after_leave = (dict(group.links), dict(group.members), list(hooked))
        rejoined = await group.add_participant("carol")
        return carol, after_leave, rejoined, group, transport

    carol, (links, members, hooked), rejoined, group, transport = asyncio.run(scenario())
    assert links == {}
    assert members == {}
    assert hooked == [carol]
    assert transport.sent_events(events.GROUP_ANSWER) == []
    assert rejoined is not None and rejoined is not carol
    assert group.links == {"carol": rejoined}
