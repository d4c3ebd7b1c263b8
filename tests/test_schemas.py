import pytest
from pydantic import ValidationError

from callengine.protocol import events
from callengine.protocol.schemas import (
    IceCandidatePayload,
    IncomingPayload,
    OfferPayload,
    ParticipantInfo,
    parse_inbound,
)


def test_incoming_accepts_client_keys() -> None:
    model = parse_inbound(
        events.CALL_INCOMING,
        {
            "callId": "c1",
            "callerId": "u1",
            "callerInfo": {"_id": "u1", "fullname": "Ann", "profilePic": "ann.png"},
            "callType": "VIDEO",
        },
    )

    assert isinstance(model, IncomingPayload)
    assert model.call_id == "c1"
    assert model.caller_info is not None
    assert model.caller_info.display_name == "Ann"
    assert model.caller_info.avatar == "ann.png"
    assert model.call_type == "video"


def test_unknown_call_type_is_voice() -> None:
    model = parse_inbound(events.CALL_INCOMING, {"call_id": "c1", "caller_id": "u1", "call_type": "hologram"})

    assert model.call_type == "voice"


def test_participant_from_populated_document() -> None:
    info = ParticipantInfo.model_validate({"userId": {"_id": "abc"}, "name": "Bea"})

    assert info.user_id == "abc"
    assert info.display_name == "Bea"
    assert info.to_payload() == {"user_id": "abc", "display_name": "Bea"}


def test_participant_requires_id() -> None:
    with pytest.raises(ValidationError):
        ParticipantInfo.model_validate({"fullname": "Nobody"})


def test_offer_description_type_is_validated() -> None:
    with pytest.raises(ValidationError):
        parse_inbound(events.WEBRTC_OFFER, {"call_id": "c1", "offer": {"type": "bogus", "sdp": ""}})

    model = parse_inbound(
        events.WEBRTC_OFFER,
        {"callId": "c1", "offer": {"type": "OFFER", "sdp": "v=0"}, "callerId": "u1"},
    )
    assert isinstance(model, OfferPayload)
    assert model.offer.type == "offer"
    assert model.origin == "u1"


def test_candidate_aliases_and_key() -> None:
    model = parse_inbound(
        events.WEBRTC_ICE_CANDIDATE,
        {
            "callId": "c1",
            "candidate": {"candidate": " candidate:1 1 udp 1 10.0.0.1 9 typ host ", "sdpMid": "0", "sdpMLineIndex": 0},
        },
    )

    assert isinstance(model, IceCandidatePayload)
    assert model.candidate.key == ("candidate:1 1 udp 1 10.0.0.1 9 typ host", "0", 0)


def test_group_payloads() -> None:
    offer = parse_inbound(
        events.GROUP_OFFER,
        {"roomId": "r1", "offer": {"type": "offer", "sdp": "v=0"}, "fromUserId": "bob"},
    )
    tracks = parse_inbound(events.GROUP_TRACKS_UPDATED, {"room_id": "r1", "userId": "bob", "tracks": {"audio": True}})

    assert offer.sender_id == "bob"
    assert tracks.tracks == {"audio": True}


def test_unknown_event_raises_key_error() -> None:
    with pytest.raises(KeyError):
        parse_inbound("call:teleport", {})
