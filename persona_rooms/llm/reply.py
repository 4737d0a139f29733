"""One persona turn on top of any adapter's generate().

Flow:
  1. Safety tier from the user's and persona's ages.
  2. Persona instructions rendered from the Handlebars template.
  3. History: last `history_window` transcript messages, trimmed so the
     window starts on a human turn. Group rooms prefix each line with
     `[speaker]: ` and compact roster ids to ordinals.
  4. Moderation ladder: full window, then the last `short_history_window`
     turns (re-validated), then no history. Only a block moves down a tier;
     any other failure propagates immediately.
  5. Post-processing: speaker labels, ordinals back to ids, trailing
     affection line, quote cleanup.
"""

from __future__ import annotations

import logging
from typing import Any

from persona_rooms.config import engine_setting, get_config, sampling_settings
from persona_rooms.errors import ContentBlocked, EmptyReply, Truncated
from persona_rooms.llm.base import (
    ChatTurn,
    GenerateRequest,
    GenerateResponse,
    LLMAdapter,
    PersonaReply,
    ReplyContext,
)
from persona_rooms.llm.safety import safety_tier
from persona_rooms.llm.text import (
    clean_excessive_quotes,
    extract_speaker_segments,
    parse_affection,
    strip_line_labels,
    unwrap_quoted_reply,
)
from persona_rooms.mentions import to_canonical, to_ordinal
from persona_rooms.models import Message, USER_ID
from persona_rooms.prompts import build_persona_context, persona_instructions

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def ensure_starts_with_user(turns: list[ChatTurn]) -> list[ChatTurn]:
    """Drop leading model turns; no human turn at all → empty history."""
    for i, turn in enumerate(turns):
        if turn.role == "user":
            return turns[i:]
    return []


def _line(message: Message, group: bool, roster: list[str] | None) -> str:
    content = to_ordinal(message.content, roster) if roster else message.content
    if group:
        return f"[{message.sender_name}]: {content}"
    return content


def build_history(
    transcript: list[Message],
    *,
    exclude_id: str | None = None,
    group: bool = False,
    roster: list[str] | None = None,
    window: int = 20,
) -> list[ChatTurn]:
    """Turn the last `window` chat messages into role-tagged turns."""
    chat = [m for m in transcript if m.type == "chat" and m.id != exclude_id]
    turns = [
        ChatTurn(role="user" if m.sender_id == USER_ID else "model", text=_line(m, group, roster))
        for m in chat[-window:]
    ] if window > 0 else []
    return ensure_starts_with_user(turns)


def ladder_windows(history: list[ChatTurn], short_window: int = 5) -> list[list[ChatTurn]]:
    """Distinct history windows to try, largest first."""
    tiers = [history, ensure_starts_with_user(history[-short_window:]) if short_window > 0 else [], []]
    windows: list[list[ChatTurn]] = []
    for tier in tiers:
        if windows and tier == windows[-1]:
            continue
        windows.append(tier)
    return windows


# ---------------------------------------------------------------------------
# Persona reply
# ---------------------------------------------------------------------------

async def _generate_laddered(
    adapter: LLMAdapter,
    base: GenerateRequest,
    windows: list[list[ChatTurn]],
    trigger: ChatTurn,
) -> tuple[GenerateResponse, int]:
    reason = "unknown"
    for tier, window in enumerate(windows):
        request = base.model_copy(update={"turns": [*window, trigger]})
        try:
            response = await adapter.generate(request)
        except ContentBlocked as e:
            reason = e.reason
        else:
            if not response.blocked:
                return response, tier
            reason = response.block_reason or "unknown"
        logger.warning(
            "reply blocked (%s) with %d history turns, tier %d/%d",
            reason, len(window), tier + 1, len(windows),
        )
    raise ContentBlocked(reason)


async def get_persona_reply(
    adapter: LLMAdapter,
    ctx: ReplyContext,
    config: dict[str, Any] | None = None,
) -> PersonaReply:
    """Run one persona turn through the adapter and post-process the reply.

    Raises ContentBlocked once every ladder tier was blocked, Truncated when
    the reply hit the output cap, EmptyReply when nothing usable came back.
    """
    config = config if config is not None else get_config()
    persona = ctx.persona
    group = ctx.room.is_group
    roster = [m.id for m in ctx.members]
    use_ordinals = group and bool(roster)

    safety = safety_tier(ctx.user.age, persona.age, engine_setting(config, "adult_age"))
    system = persona_instructions(build_persona_context(
        persona, ctx.user, ctx.room,
        members=ctx.members,
        presence=ctx.presence,
        use_ordinals=use_ordinals,
        memories=ctx.memories,
        short_memories=ctx.short_memories,
        woken=ctx.woken,
        adult=safety == "relaxed",
        now=ctx.now,
    ))

    ordinal_roster = roster if use_ordinals else None
    history = build_history(
        ctx.transcript,
        exclude_id=ctx.trigger.id,
        group=group,
        roster=ordinal_roster,
        window=engine_setting(config, "history_window"),
    )
    trigger = ChatTurn(role="user", text=_line(ctx.trigger, group, ordinal_roster))

    base = GenerateRequest(
        system=system,
        turns=[trigger],
        tier="main",
        safety=safety,
        max_output_tokens=persona.max_output_tokens or sampling_settings(config)["max_output_tokens"],
        description=f"reply: {persona.name}",
    )
    windows = ladder_windows(history, engine_setting(config, "short_history_window"))
    response, tier = await _generate_laddered(adapter, base, windows, trigger)
    if tier:
        logger.info("reply for %s accepted on ladder tier %d", persona.id, tier + 1)

    if response.finish_reason == "length":
        raise Truncated(f"Reply from {persona.name} hit the output token cap")

    text = extract_speaker_segments(response.text, persona.name) if group else strip_line_labels(response.text)
    if use_ordinals:
        text = to_canonical(text, roster)

    body, affection = parse_affection(text)
    if affection is not None and not body:
        logger.info("reply for %s carried only an affection update", persona.id)
        return PersonaReply(text="", affection=affection, silent_update=True, ladder_tier=tier)

    body = unwrap_quoted_reply(body)
    if not body:
        raise EmptyReply(
            f"Empty reply from {persona.name} (finish={response.raw_finish_reason or response.finish_reason})"
        )
    return PersonaReply(text=clean_excessive_quotes(body), affection=affection, ladder_tier=tier)
