"""Mention resolution: canonical ids ⇄ display names ⇄ ordinal ids.

Three forms of the same message exist:

  canonical  "@7e40b84f-... 你好 @user"   stored in the transcript
  display    "@張瑞辰 你好 @阿童"            what the human reads and types
  ordinal    "@2 你好 @user"               sent to the model to save tokens

All rewrites go through tokenize(), which splits text into literal and
mention segments once; the rewrite passes then work on segments instead of
patching the string in place.

Reserved ids:
  all   broadcast to the whole room
  user  the human
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from persona_rooms.models import ALL_ID, USER_ID, Participant, UserProfile

RESERVED_IDS = frozenset({ALL_ID, USER_ID})

Segment = dict[str, str]  # {"type": "literal"|"mention", "text": ..., "id"?: ...}

_ID_CHARS = r"A-Za-z0-9_\-"
_GENERIC_TOKEN = rf"[A-Za-z0-9][{_ID_CHARS}]*"


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def _token_pattern(known_ids: Iterable[str]) -> re.Pattern[str]:
    # Known ids first (longest wins) so ids with unusual characters still match
    ids = sorted({i for i in known_ids if i}, key=len, reverse=True)
    if ids:
        known = "|".join(re.escape(i) for i in ids)
        return re.compile(rf"@(?:({known})(?![{_ID_CHARS}])|({_GENERIC_TOKEN}))")
    return re.compile(rf"@()({_GENERIC_TOKEN})")


def _normalize_id(raw: str) -> str:
    return ALL_ID if raw.lower() == ALL_ID else raw


def tokenize(text: str, known_ids: Iterable[str] = ()) -> list[Segment]:
    """Split text into literal and mention segments.

    A mention is `@` followed by either one of known_ids or a generic id
    token. `@ALL` in any case is reported as the `all` id.
    """
    segments: list[Segment] = []
    pos = 0
    for match in _token_pattern(known_ids).finditer(text):
        if match.start() > pos:
            segments.append({"type": "literal", "text": text[pos:match.start()]})
        raw = match.group(1) or match.group(2)
        segments.append({"type": "mention", "text": match.group(0), "id": _normalize_id(raw)})
        pos = match.end()
    if pos < len(text):
        segments.append({"type": "literal", "text": text[pos:]})
    return segments


def render(segments: list[Segment]) -> str:
    return "".join(seg["text"] for seg in segments)


# ---------------------------------------------------------------------------
# Name maps
# ---------------------------------------------------------------------------

def build_id_name_map(
    user: UserProfile,
    participants: Iterable[Participant],
    broadcast_label: str = "大家",
) -> dict[str, str]:
    """Id → display name for every participant plus the reserved ids.

    Pass every known participant, not only the current roster, so mentions of
    members who left the room still render.
    """
    id_to_name = {USER_ID: user.nickname, ALL_ID: broadcast_label}
    for p in participants:
        id_to_name[p.id] = p.name
    return id_to_name


# ---------------------------------------------------------------------------
# Canonical ⇄ display
# ---------------------------------------------------------------------------

def to_display(
    text: str,
    id_to_name: Mapping[str, str],
    unknown_label: str | None = None,
) -> str:
    """Replace every @id with @name. `@all` stays `@all`.

    Unknown ids are left alone unless unknown_label is given, in which case
    they render as `@{unknown_label}` (e.g. a deleted persona).
    """
    out: list[str] = []
    for seg in tokenize(text, id_to_name.keys()):
        if seg["type"] == "literal":
            out.append(seg["text"])
        elif seg["id"] == ALL_ID:
            out.append("@all")
        elif seg["id"] in id_to_name:
            out.append(f"@{id_to_name[seg['id']]}")
        elif unknown_label is not None:
            out.append(f"@{unknown_label}")
        else:
            out.append(seg["text"])
    return "".join(out)


def to_canonical_from_display(
    text: str,
    user_nickname: str,
    participants: Iterable[Participant],
) -> str:
    """Turn human-typed `@name` tokens into `@id` tokens.

    Names are matched longest first so "Ann" never steals "@Anna". The
    human's own nickname maps to @user; `@ALL` in any case maps to @all.
    """
    name_to_id: dict[str, str] = {}
    if user_nickname:
        name_to_id[user_nickname] = USER_ID
    for p in participants:
        if p.name:
            name_to_id[p.name] = p.id

    names = sorted(name_to_id, key=len, reverse=True)
    alternatives = [re.escape(n) for n in names]
    pattern = re.compile(
        "@(?:(" + "|".join(alternatives) + ")|(?i:(all))(?![A-Za-z0-9_\\-]))"
        if alternatives else
        "@()(?i:(all))(?![A-Za-z0-9_\\-])"
    )

    def _sub(match: re.Match[str]) -> str:
        if match.group(1):
            return f"@{name_to_id[match.group(1)]}"
        return "@all"

    return pattern.sub(_sub, text)


# ---------------------------------------------------------------------------
# Canonical ⇄ ordinal
# ---------------------------------------------------------------------------

# "@<digits>" optionally preceded by escape backslashes: "@2", "@\2", "@\\2"
_ORDINAL = re.compile(r"@(\\*)(\d+)(?![A-Za-z0-9_\-])")


def _escape_numeric(text: str) -> str:
    return _ORDINAL.sub(lambda m: f"@\\{m.group(1)}{m.group(2)}", text)


def to_ordinal(text: str, roster: list[str]) -> str:
    """Replace roster ids with 1-based ordinals in roster order.

    Numeric tokens already in the text ("排第@2名") gain one backslash after
    the `@` so to_canonical can tell them apart from the ordinals made here.
    """
    index = {pid: i + 1 for i, pid in enumerate(roster)}
    out: list[str] = []
    for seg in tokenize(text, roster):
        if seg["type"] == "mention" and seg["id"] in index:
            out.append(f"@{index[seg['id']]}")
        else:
            out.append(_escape_numeric(seg["text"]))
    return "".join(out)


def to_canonical(text: str, roster: list[str]) -> str:
    """Inverse of to_ordinal. `@1` never matches inside `@10`."""

    def _sub(match: re.Match[str]) -> str:
        escapes, digits = match.group(1), match.group(2)
        if escapes:
            return f"@{escapes[1:]}{digits}"
        n = int(digits)
        if 1 <= n <= len(roster):
            return f"@{roster[n - 1]}"
        return match.group(0)

    return _ORDINAL.sub(_sub, text)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_mentions(text: str, roster: list[str]) -> list[str]:
    """Roster ids mentioned in canonical text, in roster order, reserved ids excluded."""
    found = {
        seg["id"] for seg in tokenize(text, roster)
        if seg["type"] == "mention"
    }
    return [pid for pid in roster if pid in found and pid not in RESERVED_IDS]


def has_broadcast(text: str) -> bool:
    return any(
        seg["type"] == "mention" and seg["id"] == ALL_ID
        for seg in tokenize(text)
    )


def mentions_user(text: str) -> bool:
    return any(
        seg["type"] == "mention" and seg["id"] == USER_ID
        for seg in tokenize(text)
    )


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

def _standalone_name(name: str) -> re.Pattern[str]:
    # name right after the token, bounded by whitespace, punctuation, @ or end
    return re.compile(r"\s*" + re.escape(name) + r"(?=[\s@]|[^\w]|$)")


def _strip_redundant_names(text: str, name: str) -> str:
    pattern = _standalone_name(name)
    match = pattern.match(text)
    while match and match.end() > 0:
        text = text[match.end():]
        match = pattern.match(text)
    return text


_SPACE_RUNS = re.compile(r" {2,}")


def cleanup(text: str, id_to_name: Mapping[str, str]) -> str:
    """Normalise mentions in a persona reply before it is stored.

    - unknown @id tokens are dropped
    - the first @id of each id is kept; a standalone copy of the id's name
      right after it is removed (not for @all / @user)
    - later @id tokens of the same id become the plain name, absorbing a
      copy of the name that directly follows them
    - runs of spaces collapse, ends are trimmed

    cleanup(cleanup(x)) == cleanup(x).
    """
    # Rewrite pass: ("mention", id) for kept tokens, ("text", str) for the rest
    items: list[tuple[str, str]] = []
    seen: set[str] = set()
    absorb: str | None = None

    def _emit_text(chunk: str) -> None:
        if items and items[-1][0] == "text":
            items[-1] = ("text", items[-1][1] + chunk)
        else:
            items.append(("text", chunk))

    for seg in tokenize(text, id_to_name.keys()):
        if seg["type"] == "literal":
            chunk = seg["text"]
            if absorb:
                chunk = re.sub(r"^\s*" + re.escape(absorb), "", chunk, count=1)
                absorb = None
            _emit_text(chunk)
            continue

        absorb = None
        mention_id = seg["id"]
        if mention_id not in id_to_name:
            continue
        if mention_id not in seen:
            seen.add(mention_id)
            items.append(("mention", mention_id))
            continue
        name = id_to_name[mention_id]
        _emit_text(name)
        absorb = name or None

    # Redundant-name pass, run on merged text so dropped tokens and rendered
    # names cannot hide a name from the check
    out: list[str] = []
    for i, (kind, value) in enumerate(items):
        if kind == "mention":
            out.append(f"@{value}")
            continue
        prev = items[i - 1] if i > 0 else None
        if prev and prev[0] == "mention" and prev[1] not in RESERVED_IDS:
            name = id_to_name.get(prev[1], "")
            if name:
                value = _strip_redundant_names(value, name)
        out.append(value)

    return _SPACE_RUNS.sub(" ", "".join(out)).strip()
