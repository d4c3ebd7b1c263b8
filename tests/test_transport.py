from callengine.protocol import LoopbackHub, events


def test_initiate_to_offline_user_fails() -> None:
    hub = LoopbackHub()
    alice = hub.connect("alice")

    alice.send(events.CALL_INITIATE, {"call_id": "c1", "receiver_id": "bob", "call_type": "voice"})

    assert alice.received_events(events.CALL_FAILED) == [{"call_id": "c1", "reason": "user-offline"}]


def test_call_lifecycle_routing() -> None:
    hub = LoopbackHub()
    alice = hub.connect("alice")
    bob = hub.connect("bob")

    alice.send(
        events.CALL_INITIATE,
        {"call_id": "c1", "receiver_id": "bob", "call_type": "video", "caller_info": {"user_id": "alice"}},
    )
    incoming = bob.received_events(events.CALL_INCOMING)
    assert incoming[0]["caller_id"] == "alice"
    assert incoming[0]["call_type"] == "video"
    assert alice.received_events(events.CALL_RINGING) == [{"call_id": "c1"}]

    bob.send(events.CALL_ANSWER, {"call_id": "c1"})
    assert alice.received_events(events.CALL_ANSWERED) == [{"call_id": "c1"}]

    alice.send(events.WEBRTC_OFFER, {"call_id": "c1", "offer": {"type": "offer", "sdp": "o"}, "receiver_id": "bob"})
    forwarded = bob.received_events(events.WEBRTC_OFFER)[0]
    assert forwarded["caller_id"] == "alice"
    assert "receiver_id" not in forwarded

    bob.send(events.WEBRTC_ANSWER, {"call_id": "c1", "answer": {"type": "answer", "sdp": "a"}, "caller_id": "alice"})
    assert alice.received_events(events.WEBRTC_ANSWER)[0]["sender_id"] == "bob"

    bob.send(events.CALL_END, {"call_id": "c1", "reason": "hangup"})
    assert alice.received_events(events.CALL_ENDED) == [{"call_id": "c1", "reason": "hangup"}]

    # The call is forgotten once ended.
    bob.send(events.CALL_END, {"call_id": "c1", "reason": "hangup"})
    assert len(alice.received_events(events.CALL_ENDED)) == 1


def test_hold_and_release_preserve_order() -> None:
    hub = LoopbackHub()
    alice = hub.connect("alice")
    bob = hub.connect("bob")
    alice.send(events.CALL_INITIATE, {"call_id": "c1", "receiver_id": "bob", "call_type": "voice"})

    hub.hold()
    bob.send(events.CALL_ANSWER, {"call_id": "c1"})
    bob.send(events.CALL_MUTE_STATUS, {"call_id": "c1", "is_muted": True})
    assert alice.received_events(events.CALL_ANSWERED) == []

    hub.release()
    names = [name for name, _payload in alice.received]
    assert names[-2:] == [events.CALL_ANSWERED, events.CALL_MUTE_STATUS]


def test_group_room_relay() -> None:
    hub = LoopbackHub()
    alice = hub.connect("alice")
    bob = hub.connect("bob")

    alice.send(events.GROUP_JOIN, {"room_id": "r1", "group_id": "g1", "call_type": "video"})
    bob.send(events.GROUP_JOIN, {"room_id": "r1", "group_id": "g1", "call_type": "video"})
    joined = alice.received_events(events.GROUP_PARTICIPANT_JOINED)
    assert [payload["user_id"] for payload in joined] == ["bob"]
    assert bob.received_events(events.GROUP_PARTICIPANT_JOINED) == []

    alice.send(events.GROUP_OFFER, {"room_id": "r1", "offer": {"type": "offer", "sdp": "o"}, "target_user_id": "bob"})
    assert bob.received_events(events.GROUP_OFFER)[0]["sender_id"] == "alice"

    bob.send(events.GROUP_UPDATE_TRACKS, {"room_id": "r1", "tracks": {"video": False}})
    relayed = alice.received_events(events.GROUP_TRACKS_UPDATED)
    assert relayed == [{"room_id": "r1", "tracks": {"video": False}, "user_id": "bob"}]

    bob.send(events.GROUP_LEAVE, {"room_id": "r1"})
    assert alice.received_events(events.GROUP_PARTICIPANT_LEFT) == [{"room_id": "r1", "user_id": "bob"}]
