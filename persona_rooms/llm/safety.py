"""Age gate for the safety tier.

Relaxed filtering needs both ages known and at least the adult threshold.
Anything unparseable counts as unknown, and unknown means strict.
"""

from __future__ import annotations

import re

from persona_rooms.llm.base import SafetyTier

LEGAL_ADULT_AGE = 18

_AGE_SUFFIX = re.compile(r"歲|岁|years?\s*old", re.IGNORECASE)
_LEADING_INT = re.compile(r"[+-]?\d+")


def parse_age(value: int | str | None) -> int | None:
    """25, "25", "25歲", "25 years old" → 25. Outside (0, 150) → None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 < value < 150 else None

    cleaned = _AGE_SUFFIX.sub("", str(value).strip()).strip()
    match = _LEADING_INT.match(cleaned)
    if not match:
        return None
    age = int(match.group(0))
    return age if 0 < age < 150 else None


def is_adult_conversation(
    user_age: int | str | None,
    persona_age: int | str | None,
    adult_age: int = LEGAL_ADULT_AGE,
) -> bool:
    user = parse_age(user_age)
    persona = parse_age(persona_age)
    if user is None or persona is None:
        return False
    return user >= adult_age and persona >= adult_age


def safety_tier(
    user_age: int | str | None,
    persona_age: int | str | None,
    adult_age: int = LEGAL_ADULT_AGE,
) -> SafetyTier:
    return "relaxed" if is_adult_conversation(user_age, persona_age, adult_age) else "strict"
