"""Generation adapter contract.

Every provider adapter matches the LLMAdapter protocol:

    generate(request)        one raw call, no persona logic
    validate_key(api_key)    cheap credential check
    get_persona_reply(ctx)   full persona turn: safety tier, history window,
                             moderation ladder, post-processing

Wire-format differences stay inside the adapter; everything above it speaks
GenerateRequest / GenerateResponse.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from persona_rooms.models import Message, Participant, Presence, Room, UserProfile

Tier = Literal["main", "lite"]
SafetyTier = Literal["strict", "relaxed"]
FinishReason = Literal["stop", "length", "blocked", "other"]
Role = Literal["user", "model"]


class ChatTurn(BaseModel):
    role: Role
    text: str


class GenerateRequest(BaseModel):
    system: str = ""
    turns: list[ChatTurn]  # must end on a user turn
    tier: Tier = "main"
    safety: SafetyTier = "strict"
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_output_tokens: int | None = None
    description: str = ""  # shows up in queue logs


class GenerateResponse(BaseModel):
    text: str = ""
    finish_reason: FinishReason = "stop"
    blocked: bool = False
    block_reason: str | None = None
    raw_finish_reason: str | None = None


class KeyCheck(BaseModel):
    valid: bool
    error: str | None = None


class PersonaReply(BaseModel):
    """Accepted reply of one persona turn, content in canonical-id form."""

    text: str
    affection: int | None = None
    silent_update: bool = False  # only an affection line came back
    ladder_tier: int = 0  # 0 full window, 1 short window, 2 no history


class ReplyContext(BaseModel):
    """Everything one persona turn needs, passed explicitly."""

    persona: Participant
    user: UserProfile
    room: Room
    members: list[Participant] = Field(default_factory=list)  # roster order
    presence: dict[str, Presence] = Field(default_factory=dict)
    transcript: list[Message] = Field(default_factory=list)
    trigger: Message
    woken: bool = False
    memories: list[str] = Field(default_factory=list)
    short_memories: list[str] = Field(default_factory=list)
    now: datetime | None = None


class LLMAdapter(Protocol):
    provider: str

    async def generate(self, request: GenerateRequest) -> GenerateResponse: ...

    async def validate_key(self, api_key: str) -> KeyCheck: ...

    async def get_persona_reply(self, ctx: ReplyContext) -> PersonaReply: ...
