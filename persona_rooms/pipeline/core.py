"""Exchange runner: everything that happens after one trigger message.

Exchange flow:
  1. Persist the trigger if the store does not have it yet.
  2. Round 1 candidates from the trigger (see activation).
  3. Per round:
       a. stop on no candidates, the round cap, or a repeated candidate set
       b. draw who actually replies, shuffle speaking order
       c. each speaker: adapter.get_persona_reply → affection → cleanup →
          append to transcript. One speaker's failure skips only that turn.
       d. next candidates = members mentioned in this round's replies
  4. Single rooms stop after round 1.
  5. Optional memory hook with the trigger and the accepted replies.

Rounds and turns run strictly one after another; rooms are independent.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from persona_rooms.config import engine_setting, get_config
from persona_rooms.errors import ChatEngineError, EmptyReply
from persona_rooms.llm.base import LLMAdapter, ReplyContext
from persona_rooms.llm.registry import resolve_adapter
from persona_rooms.memory.buffer import MemoryBuffer
from persona_rooms.mentions import build_id_name_map, cleanup, extract_mentions, to_canonical_from_display
from persona_rooms.models import USER_ID, Message, Participant, Presence, Room, UserProfile
from persona_rooms.pipeline.activation import (
    Candidate,
    UnableToRespond,
    direct_candidates,
    draw,
    first_round_candidates,
    next_round_candidates,
    shuffle_avoid_first,
    signature,
)
from persona_rooms.presence import get_presence
from persona_rooms.relationships import apply_affection
from persona_rooms.storage import ConversationStore

logger = logging.getLogger(__name__)

TerminationReason = Literal["no_candidates", "round_cap", "cycle", "single_room"]

MemoryRecorder = Callable[[Room, list[Message], dict[str, str]], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class TurnFailure(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    participant_id: str
    kind: str  # exception class name, e.g. "ContentBlocked"
    message: str
    round: int
    error: ChatEngineError = Field(exclude=True)


class AffectionChange(BaseModel):
    participant_id: str
    before: int
    after: int
    silent: bool = False


class ExchangeResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    replies: list[Message] = Field(default_factory=list)
    failures: list[TurnFailure] = Field(default_factory=list)
    unable_to_respond: list[UnableToRespond] = Field(default_factory=list)
    affection: list[AffectionChange] = Field(default_factory=list)
    rounds: int = 0
    termination: TerminationReason = "no_candidates"
    memory_error: ChatEngineError | None = Field(default=None, exclude=True)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class ExchangeContext:
    """Everything one exchange needs, passed explicitly.

    participants holds every known persona (not only the roster) so that
    mentions of former members still resolve to names.
    """

    room: Room
    user: UserProfile
    participants: dict[str, Participant]
    store: ConversationStore
    config: dict[str, Any] = field(default_factory=get_config)
    rng: random.Random = field(default_factory=random.Random)
    now: datetime | None = None
    is_holiday: bool = False
    adapter_for: Callable[[Participant], LLMAdapter] | None = None
    memory: MemoryBuffer | None = None
    memory_recorder: MemoryRecorder | None = None

    def adapter(self, participant: Participant) -> LLMAdapter:
        if self.adapter_for is not None:
            return self.adapter_for(participant)
        return resolve_adapter(participant, self.config)

    def roster(self) -> list[str]:
        return [pid for pid in self.room.roster if pid in self.participants]

    def presence(self) -> dict[str, Presence]:
        return {
            pid: get_presence(self.participants[pid], self.now, is_holiday=self.is_holiday)
            for pid in self.roster()
        }

    def id_to_name(self) -> dict[str, str]:
        return build_id_name_map(
            self.user, self.participants.values(), engine_setting(self.config, "broadcast_label"),
        )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def _first_round(ctx: ExchangeContext, trigger: Message, roster: list[str], presence: dict[str, Presence]) -> list[Candidate]:
    if ctx.room.is_group:
        return first_round_candidates(trigger.content, roster, presence)
    # single room: the lone persona is always the one being addressed
    return direct_candidates(roster[:1], presence)


def _memories(ctx: ExchangeContext, pid: str) -> tuple[list[str], list[str]]:
    if ctx.memory is None:
        return [], []
    # persona-scoped facts first, then facts promoted from this room
    long_term = [r.content for r in [*ctx.memory.records(pid), *ctx.memory.records(ctx.room.id)]]
    short_term = [s.content for s in ctx.memory.slots(ctx.room.id)]
    return long_term, short_term


async def run_exchange(trigger: Message, ctx: ExchangeContext) -> ExchangeResult:
    """Run every round triggered by one message and return what happened."""
    room = ctx.room
    roster = ctx.roster()
    presence = ctx.presence()
    id_to_name = ctx.id_to_name()
    max_rounds = int(engine_setting(ctx.config, "max_rounds"))
    affection_mode = engine_setting(ctx.config, "affection_mode")

    transcript = ctx.store.get_messages(room.id)
    if not any(m.id == trigger.id for m in transcript):
        ctx.store.append_message(trigger)
        transcript.append(trigger)

    result = ExchangeResult()
    candidates = _first_round(ctx, trigger, roster, presence)
    triggers: dict[str, Message] = {}
    previous_signature: str | None = None
    last_speaker: str | None = None

    logger.info("exchange room=%s trigger=%s roster=%d", room.id, trigger.id, len(roster))

    while True:
        if not candidates:
            result.termination = "no_candidates"
            break
        if result.rounds >= max_rounds:
            result.termination = "round_cap"
            break
        sig = signature(candidates)
        if sig == previous_signature:
            logger.info("exchange room=%s: candidate set %s repeated, stopping", room.id, sig)
            result.termination = "cycle"
            break
        previous_signature = sig

        result.rounds += 1
        round_no = result.rounds
        accepted, declined = draw(candidates, ctx.rng, round_no)
        result.unable_to_respond.extend(declined)
        by_id = {c.participant_id: c for c in accepted}
        order = shuffle_avoid_first(list(by_id), last_speaker, ctx.rng)
        logger.debug("round %d: candidates=%s speakers=%s", round_no, sig, order)

        round_replies: list[Message] = []
        for pid in order:
            persona = ctx.participants[pid]
            long_term, short_term = _memories(ctx, pid)
            reply_ctx = ReplyContext(
                persona=persona,
                user=ctx.user,
                room=room,
                members=[ctx.participants[m] for m in roster],
                presence=presence,
                transcript=list(transcript),
                trigger=triggers.get(pid, trigger),
                woken=by_id[pid].woken,
                memories=long_term,
                short_memories=short_term,
                now=ctx.now,
            )
            try:
                reply = await ctx.adapter(persona).get_persona_reply(reply_ctx)
            except ChatEngineError as e:
                logger.warning("turn failed room=%s persona=%s: %s: %s", room.id, pid, type(e).__name__, e)
                result.failures.append(TurnFailure(
                    participant_id=pid, kind=type(e).__name__, message=str(e), round=round_no, error=e,
                ))
                continue

            if reply.affection is not None:
                new_value = apply_affection(persona, reply.affection, affection_mode)
                ctx.store.update_affection(pid, new_value)
                ctx.participants[pid] = persona.model_copy(update={"affection": new_value})
                result.affection.append(AffectionChange(
                    participant_id=pid, before=persona.affection, after=new_value, silent=reply.silent_update,
                ))
            if reply.silent_update:
                continue

            content = cleanup(reply.text, id_to_name)
            if not content:
                e = EmptyReply(f"Reply from {persona.name} was empty after mention cleanup")
                result.failures.append(TurnFailure(
                    participant_id=pid, kind=type(e).__name__, message=str(e), round=round_no, error=e,
                ))
                continue

            message = Message(room_id=room.id, sender_id=pid, sender_name=persona.name, content=content)
            ctx.store.append_message(message)
            transcript.append(message)
            round_replies.append(message)
            result.replies.append(message)
            last_speaker = pid

        if not room.is_group:
            result.termination = "single_room"
            break
        candidates, triggers = next_round_candidates(round_replies, roster, presence)

    logger.info(
        "exchange room=%s done: rounds=%d replies=%d failures=%d termination=%s",
        room.id, result.rounds, len(result.replies), len(result.failures), result.termination,
    )

    if ctx.memory_recorder is not None and result.replies:
        try:
            await ctx.memory_recorder(room, [trigger, *result.replies], id_to_name)
        except ChatEngineError as e:
            logger.warning("memory update failed room=%s: %s", room.id, e)
            result.memory_error = e

    return result


async def send_user_message(text: str, ctx: ExchangeContext) -> ExchangeResult:
    """Entry point for human input: resolve typed `@name` tokens, then run the exchange."""
    members = [ctx.participants[pid] for pid in ctx.roster()]
    content = to_canonical_from_display(text, ctx.user.nickname, members)
    trigger = Message(room_id=ctx.room.id, sender_id=USER_ID, sender_name=ctx.user.nickname, content=content)
    logger.debug("user message room=%s mentions=%s", ctx.room.id, extract_mentions(content, ctx.roster()))
    return await run_exchange(trigger, ctx)
