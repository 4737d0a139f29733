"""Core domain models.

All engine stages and the store operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

Presence = Literal["online", "away", "offline"]
RoomMode = Literal["single", "group"]
MessageType = Literal["chat", "system"]
Provenance = Literal["manual", "auto"]

USER_ID = "user"      # sender id of the human
SYSTEM_ID = "system"  # sender id of room notices
ALL_ID = "all"        # broadcast mention


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PresencePeriod(BaseModel):
    """One block of a daily schedule. `end` is exclusive; start > end wraps midnight."""

    start: int = Field(ge=0, le=24)
    end: int = Field(ge=0, le=24)
    status: Presence


class PresenceSchedule(BaseModel):
    workday_periods: list[PresencePeriod] = Field(default_factory=list)
    holiday_periods: list[PresencePeriod] = Field(default_factory=list)


class Participant(BaseModel):
    """A simulated persona taking part in rooms."""

    id: str
    name: str
    age: int | str | None = None
    personality: str = ""
    speaking_style: str = ""
    system_prompt: str = ""
    schedule: PresenceSchedule | None = None
    affection: int = 0
    is_romantic: bool = False
    provider: str | None = None  # overrides the configured default provider
    max_output_tokens: int | None = None


class UserProfile(BaseModel):
    """The human side of every conversation."""

    nickname: str = "User"
    age: int | str | None = None
    global_system_prompt: str = ""


class Room(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    roster: list[str] = Field(default_factory=list)  # order is the ordinal-id basis
    mode: RoomMode = "single"

    @property
    def is_group(self) -> bool:
        return self.mode == "group"


class Message(BaseModel):
    """One transcript entry. Content is always in canonical-id form."""

    id: str = Field(default_factory=_new_id)
    room_id: str
    sender_id: str  # USER_ID | SYSTEM_ID | <participant id>
    sender_name: str = ""
    content: str
    timestamp: datetime = Field(default_factory=_now)
    type: MessageType = "chat"

    @property
    def from_user(self) -> bool:
        return self.sender_id == USER_ID


class MemorySlot(BaseModel):
    """A short-term memory entry; at most six live in one scope."""

    id: str = Field(default_factory=_new_id)
    scope_id: str
    content: str
    processed: bool = False
    provenance: Provenance = "auto"
    created_at: datetime = Field(default_factory=_now)


class MemoryRecord(BaseModel):
    """A durable long-term fact. Only the promotion step creates these."""

    id: str = Field(default_factory=_new_id)
    scope_id: str
    content: str
    provenance: Provenance = "auto"
    source_room_id: str | None = None
    created_at: datetime = Field(default_factory=_now)
