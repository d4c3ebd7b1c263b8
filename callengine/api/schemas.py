"""
Pydantic schemas for the local REST/WS control surface.
"""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class InitiateRequest(BaseModel):
    peer_id: str = Field(validation_alias=AliasChoices("peer_id", "peerId", "receiver_id", "receiverId"))
    call_type: str = Field(default="video", validation_alias=AliasChoices("call_type", "callType"))
    model_config = ConfigDict(populate_by_name=True)

    @field_validator("call_type", mode="before")
    @classmethod
    def _normalise_call_type(cls, value: object) -> str:
        return str(value or "video").strip().lower()


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ToggleRequest(BaseModel):
    """``enabled`` omitted means "flip the current value"."""

    enabled: Optional[bool] = None


class GroupJoinRequest(BaseModel):
    room_id: str = Field(validation_alias=AliasChoices("room_id", "roomId"))
    group_id: str = Field(validation_alias=AliasChoices("group_id", "groupId"))
    call_type: str = Field(default="video", validation_alias=AliasChoices("call_type", "callType"))
    model_config = ConfigDict(populate_by_name=True)


class ErrorDetail(BaseModel):
    code: str
    message: str
    remediation: str
