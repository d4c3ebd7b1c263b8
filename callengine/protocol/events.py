"""
Logical event names exchanged over the signaling channel.
"""

from __future__ import annotations

# 1:1 call lifecycle
CALL_INITIATE = "call:initiate"
CALL_ANSWER = "call:answer"
CALL_REJECT = "call:reject"
CALL_END = "call:end"
CALL_INCOMING = "call:incoming"
CALL_RINGING = "call:ringing"
CALL_ANSWERED = "call:answered"
CALL_REJECTED = "call:rejected"
CALL_ENDED = "call:ended"
CALL_FAILED = "call:failed"
CALL_MUTE_STATUS = "call:mute-status"

# session description / connectivity exchange
WEBRTC_OFFER = "webrtc:offer"
WEBRTC_ANSWER = "webrtc:answer"
WEBRTC_ICE_CANDIDATE = "webrtc:ice-candidate"

# group calls
GROUP_JOIN = "groupcall:join"
GROUP_LEAVE = "groupcall:leave"
GROUP_INVITATION = "groupcall:invitation"
GROUP_PARTICIPANT_JOINED = "groupcall:participant-joined"
GROUP_PARTICIPANT_LEFT = "groupcall:participant-left"
GROUP_OFFER = "groupcall:webrtc-offer"
GROUP_ANSWER = "groupcall:webrtc-answer"
GROUP_ICE_CANDIDATE = "groupcall:webrtc-ice-candidate"
GROUP_UPDATE_TRACKS = "groupcall:update-tracks"
GROUP_TRACKS_UPDATED = "groupcall:tracks-updated"
GROUP_SCREEN_SHARE_START = "groupcall:screen-share-start"
GROUP_SCREEN_SHARE_STOP = "groupcall:screen-share-stop"
GROUP_SCREEN_SHARE_STARTED = "groupcall:screen-share-started"
GROUP_SCREEN_SHARE_STOPPED = "groupcall:screen-share-stopped"

INBOUND_CALL_EVENTS = (
    CALL_INCOMING,
    CALL_RINGING,
    CALL_ANSWERED,
    CALL_REJECTED,
    CALL_ENDED,
    CALL_FAILED,
    CALL_MUTE_STATUS,
    WEBRTC_OFFER,
    WEBRTC_ANSWER,
    WEBRTC_ICE_CANDIDATE,
)

INBOUND_GROUP_EVENTS = (
    GROUP_INVITATION,
    GROUP_PARTICIPANT_JOINED,
    GROUP_PARTICIPANT_LEFT,
    GROUP_OFFER,
    GROUP_ANSWER,
    GROUP_ICE_CANDIDATE,
    GROUP_TRACKS_UPDATED,
    GROUP_SCREEN_SHARE_STARTED,
    GROUP_SCREEN_SHARE_STOPPED,
)

INBOUND_EVENTS = INBOUND_CALL_EVENTS + INBOUND_GROUP_EVENTS
