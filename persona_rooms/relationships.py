"""Affection bookkeeping and the relationship level it maps to."""

from __future__ import annotations

import logging
from typing import Literal

from persona_rooms.models import Participant

logger = logging.getLogger(__name__)

AffectionMode = Literal["absolute", "delta"]

# (lower bound inclusive, level), checked from the top down
_LEVELS: list[tuple[int, str]] = [
    (200, "soulmate"),
    (80, "close_friend"),
    (30, "friend"),
    (10, "acquaintance"),
    (-30, "stranger"),
    (-100, "dislike"),
]

LEVEL_LABELS: dict[str, str] = {
    "enemy": "敵人",
    "dislike": "討厭",
    "stranger": "陌生人",
    "acquaintance": "認識",
    "friend": "朋友",
    "close_friend": "好朋友",
    "soulmate": "靈魂伴侶",
}


def relationship_level(affection: int) -> str:
    for lower, level in _LEVELS:
        if affection >= lower:
            return level
    return "enemy"


def apply_affection(participant: Participant, value: int, mode: AffectionMode = "absolute") -> int:
    """Return the participant's new affection after a reply reported `value`.

    In "absolute" mode the reply states the new total; in "delta" mode it is
    added to the current score. The participant itself is not mutated.
    """
    if mode == "delta":
        new_value = participant.affection + value
    else:
        new_value = value
    if new_value != participant.affection:
        logger.debug(
            "affection %s: %d -> %d (%s)",
            participant.id, participant.affection, new_value, mode,
        )
    return new_value
