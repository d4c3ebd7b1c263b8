"""
Pydantic schemas mirroring the signaling channel contract.

Outbound payloads are serialised with snake_case keys; inbound payloads also
accept the camelCase keys the web and mobile clients send.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from . import events


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class SignalModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ParticipantInfo(SignalModel):
    user_id: str = Field(validation_alias=_alias("user_id", "userId", "_id", "id"))
    display_name: str = Field(default="", validation_alias=_alias("display_name", "fullname", "name"))
    avatar: Optional[str] = Field(default=None, validation_alias=_alias("avatar", "profilePic", "profile_pic"))

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_user_id(cls, value: object) -> str:
        # Some clients send a populated user document instead of the id.
        if isinstance(value, dict):
            value = value.get("_id") or value.get("id")
        result = str(value or "").strip()
        if not result:
            raise ValueError("user_id is required")
        return result


class SessionDescriptionModel(SignalModel):
    type: str
    sdp: str

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in {"offer", "answer", "pranswer", "rollback"}:
            raise ValueError(f"unsupported description type '{value}'")
        return result


class CandidateModel(SignalModel):
    candidate: str
    sdp_mid: Optional[str] = Field(default=None, validation_alias=_alias("sdp_mid", "sdpMid"))
    sdp_mline_index: Optional[int] = Field(
        default=None, validation_alias=_alias("sdp_mline_index", "sdpMLineIndex")
    )
    username_fragment: Optional[str] = Field(
        default=None, validation_alias=_alias("username_fragment", "usernameFragment")
    )

    @property
    def key(self) -> tuple:
        return (self.candidate.strip(), self.sdp_mid, self.sdp_mline_index)


# ------------------------------------------------------------------ 1:1 calls


class CallIdPayload(SignalModel):
    call_id: str = Field(validation_alias=_alias("call_id", "callId"))


class InitiatePayload(CallIdPayload):
    receiver_id: str = Field(validation_alias=_alias("receiver_id", "receiverId"))
    call_type: str = Field(validation_alias=_alias("call_type", "callType"))
    caller_info: ParticipantInfo = Field(validation_alias=_alias("caller_info", "callerInfo"))


class IncomingPayload(CallIdPayload):
    caller_id: str = Field(validation_alias=_alias("caller_id", "callerId"))
    caller_info: Optional[ParticipantInfo] = Field(
        default=None, validation_alias=_alias("caller_info", "callerInfo")
    )
    call_type: str = Field(default="voice", validation_alias=_alias("call_type", "callType"))

    @field_validator("call_type", mode="before")
    @classmethod
    def _normalise_call_type(cls, value: object) -> str:
        return "video" if str(value or "").lower() == "video" else "voice"


class ReasonPayload(CallIdPayload):
    reason: Optional[str] = None


class MuteStatusPayload(CallIdPayload):
    is_muted: bool = Field(validation_alias=_alias("is_muted", "isMuted"))


class OfferPayload(CallIdPayload):
    offer: SessionDescriptionModel
    receiver_id: Optional[str] = Field(default=None, validation_alias=_alias("receiver_id", "receiverId"))
    caller_id: Optional[str] = Field(default=None, validation_alias=_alias("caller_id", "callerId"))
    sender_id: Optional[str] = Field(default=None, validation_alias=_alias("sender_id", "senderId"))

    @property
    def origin(self) -> Optional[str]:
        return self.sender_id or self.caller_id


class AnswerPayload(CallIdPayload):
    answer: SessionDescriptionModel
    caller_id: Optional[str] = Field(default=None, validation_alias=_alias("caller_id", "callerId"))
    sender_id: Optional[str] = Field(default=None, validation_alias=_alias("sender_id", "senderId"))


class IceCandidatePayload(CallIdPayload):
    candidate: CandidateModel
    receiver_id: Optional[str] = Field(default=None, validation_alias=_alias("receiver_id", "receiverId"))
    sender_id: Optional[str] = Field(default=None, validation_alias=_alias("sender_id", "senderId"))


# ---------------------------------------------------------------- group calls


class GroupRoomPayload(SignalModel):
    room_id: str = Field(validation_alias=_alias("room_id", "roomId"))


class GroupJoinPayload(GroupRoomPayload):
    group_id: str = Field(validation_alias=_alias("group_id", "groupId"))
    call_type: str = Field(validation_alias=_alias("call_type", "callType"))
    user_info: ParticipantInfo = Field(validation_alias=_alias("user_info", "userInfo"))


class GroupInvitationPayload(GroupRoomPayload):
    group_id: str = Field(validation_alias=_alias("group_id", "groupId"))
    call_type: str = Field(default="voice", validation_alias=_alias("call_type", "callType"))
    caller_info: Optional[ParticipantInfo] = Field(
        default=None, validation_alias=_alias("caller_info", "callerInfo")
    )
    group_name: Optional[str] = Field(default=None, validation_alias=_alias("group_name", "groupName"))


class GroupParticipantPayload(GroupRoomPayload):
    user_id: str = Field(validation_alias=_alias("user_id", "userId"))
    user_info: Optional[ParticipantInfo] = Field(default=None, validation_alias=_alias("user_info", "userInfo"))


class GroupOfferPayload(GroupRoomPayload):
    offer: SessionDescriptionModel
    target_user_id: Optional[str] = Field(
        default=None, validation_alias=_alias("target_user_id", "targetUserId")
    )
    sender_id: Optional[str] = Field(default=None, validation_alias=_alias("sender_id", "senderId", "fromUserId"))


class GroupAnswerPayload(GroupRoomPayload):
    answer: SessionDescriptionModel
    target_user_id: Optional[str] = Field(
        default=None, validation_alias=_alias("target_user_id", "targetUserId")
    )
    sender_id: Optional[str] = Field(default=None, validation_alias=_alias("sender_id", "senderId", "fromUserId"))


class GroupIceCandidatePayload(GroupRoomPayload):
    candidate: CandidateModel
    target_user_id: Optional[str] = Field(
        default=None, validation_alias=_alias("target_user_id", "targetUserId")
    )
    sender_id: Optional[str] = Field(default=None, validation_alias=_alias("sender_id", "senderId", "fromUserId"))


class GroupTracksPayload(GroupRoomPayload):
    tracks: Dict[str, bool] = Field(default_factory=dict)
    user_id: Optional[str] = Field(default=None, validation_alias=_alias("user_id", "userId"))


class GroupScreenSharePayload(GroupRoomPayload):
    track_id: Optional[str] = Field(default=None, validation_alias=_alias("track_id", "trackId"))
    user_id: Optional[str] = Field(default=None, validation_alias=_alias("user_id", "userId"))


INBOUND_MODELS: Dict[str, Type[SignalModel]] = {
    events.CALL_INCOMING: IncomingPayload,
    events.CALL_RINGING: CallIdPayload,
    events.CALL_ANSWERED: CallIdPayload,
    events.CALL_REJECTED: ReasonPayload,
    events.CALL_ENDED: ReasonPayload,
    events.CALL_FAILED: ReasonPayload,
    events.CALL_MUTE_STATUS: MuteStatusPayload,
    events.WEBRTC_OFFER: OfferPayload,
    events.WEBRTC_ANSWER: AnswerPayload,
    events.WEBRTC_ICE_CANDIDATE: IceCandidatePayload,
    events.GROUP_INVITATION: GroupInvitationPayload,
    events.GROUP_PARTICIPANT_JOINED: GroupParticipantPayload,
    events.GROUP_PARTICIPANT_LEFT: GroupParticipantPayload,
    events.GROUP_OFFER: GroupOfferPayload,
    events.GROUP_ANSWER: GroupAnswerPayload,
    events.GROUP_ICE_CANDIDATE: GroupIceCandidatePayload,
    events.GROUP_TRACKS_UPDATED: GroupTracksPayload,
    events.GROUP_SCREEN_SHARE_STARTED: GroupScreenSharePayload,
    events.GROUP_SCREEN_SHARE_STOPPED: GroupScreenSharePayload,
}


def parse_inbound(event: str, payload: Optional[Dict[str, Any]]) -> SignalModel:
    """Validate an inbound payload; raises ``KeyError`` for unknown events."""

    model = INBOUND_MODELS[event]
    return model.model_validate(payload or {})
