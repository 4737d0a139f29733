"""Who gets to speak in a round.

Round 1:
  @all in the trigger  → every roster member, broadcast odds
  otherwise            → mentioned members (mention odds) plus every
                         online member (always)
Later rounds:
  members @-mentioned in the previous round's replies, mention odds; a reply
  never re-activates its own author and the human is never a candidate.

Odds by presence:
              online  away  offline
  broadcast    1.0    0.5    0.1
  mention      1.0    0.8    0.3

Each candidate gets one independent draw from the injected random source.
Away/offline candidates that lose their draw are reported back as
unable_to_respond so the caller can show "X is away".
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from typing import Literal, TypeVar

from pydantic import BaseModel

from persona_rooms.mentions import extract_mentions, has_broadcast
from persona_rooms.models import Message, Presence

T = TypeVar("T")

BROADCAST_PROBABILITY: dict[Presence, float] = {"online": 1.0, "away": 0.5, "offline": 0.1}
MENTION_PROBABILITY: dict[Presence, float] = {"online": 1.0, "away": 0.8, "offline": 0.3}

ActivationReason = Literal["broadcast", "mention", "online"]


class Candidate(BaseModel):
    participant_id: str
    presence: Presence
    reason: ActivationReason
    probability: float

    @property
    def woken(self) -> bool:
        """Pulled in by @all while not online."""
        return self.reason == "broadcast" and self.presence != "online"


class UnableToRespond(BaseModel):
    participant_id: str
    reason: Presence
    round: int = 1


def reply_probability(presence: Presence, *, broadcast: bool = False, mentioned: bool = False) -> float:
    if broadcast:
        return BROADCAST_PROBABILITY[presence]
    if mentioned:
        return MENTION_PROBABILITY[presence]
    return 1.0 if presence == "online" else 0.0


def _candidate(pid: str, presence: Presence, reason: ActivationReason) -> Candidate:
    return Candidate(
        participant_id=pid,
        presence=presence,
        reason=reason,
        probability=reply_probability(
            presence, broadcast=reason == "broadcast", mentioned=reason == "mention",
        ),
    )


def first_round_candidates(
    text: str,
    roster: list[str],
    presence: dict[str, Presence],
) -> list[Candidate]:
    """Candidates for the trigger message, in roster order."""
    if has_broadcast(text):
        return [_candidate(pid, presence.get(pid, "online"), "broadcast") for pid in roster]

    mentioned = set(extract_mentions(text, roster))
    candidates = []
    for pid in roster:
        status = presence.get(pid, "online")
        if pid in mentioned:
            candidates.append(_candidate(pid, status, "mention"))
        elif status == "online":
            candidates.append(_candidate(pid, status, "online"))
    return candidates


def direct_candidates(pids: Sequence[str], presence: dict[str, Presence]) -> list[Candidate]:
    return [_candidate(pid, presence.get(pid, "online"), "mention") for pid in pids]


def next_round_candidates(
    replies: list[Message],
    roster: list[str],
    presence: dict[str, Presence],
) -> tuple[list[Candidate], dict[str, Message]]:
    """Candidates mentioned by the previous round's replies.

    Also returns, per candidate, the latest reply that mentioned it; that
    reply is the candidate's trigger message.
    """
    triggers: dict[str, Message] = {}
    for reply in replies:
        for pid in extract_mentions(reply.content, roster):
            if pid != reply.sender_id:
                triggers[pid] = reply
    ordered = [pid for pid in roster if pid in triggers]
    return direct_candidates(ordered, presence), triggers


def draw(
    candidates: list[Candidate],
    rng: random.Random,
    round_no: int = 1,
) -> tuple[list[Candidate], list[UnableToRespond]]:
    """One Bernoulli draw per candidate, in order."""
    accepted: list[Candidate] = []
    declined: list[UnableToRespond] = []
    for c in candidates:
        if rng.random() < c.probability:
            accepted.append(c)
        elif c.presence != "online":
            declined.append(UnableToRespond(participant_id=c.participant_id, reason=c.presence, round=round_no))
    return accepted, declined


def shuffle_avoid_first(items: Sequence[T], avoid: T | None, rng: random.Random) -> list[T]:
    """Shuffle; if `avoid` lands first, move it to the end."""
    result = list(items)
    rng.shuffle(result)
    if len(result) >= 2 and avoid is not None and result[0] == avoid:
        result.append(result.pop(0))
    return result


def signature(candidates: list[Candidate]) -> str:
    return ",".join(sorted(c.participant_id for c in candidates))
