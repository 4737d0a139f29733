"""Reply post-processing: speaker labels, quotes, trailing affection line."""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Speaker labels
# ---------------------------------------------------------------------------

_LINE_LABEL = re.compile(r"^\[.*?\]:[ ]?", re.MULTILINE)
_SPEAKER_TAG = re.compile(r"\[([^\]]+)\]:[ ]?")


def strip_line_labels(text: str) -> str:
    """Remove a leading `[speaker]: ` from every line."""
    return _LINE_LABEL.sub("", text)


def extract_speaker_segments(text: str, speaker: str) -> str:
    """Keep only the parts of a multi-speaker reply attributed to `speaker`.

    Text before the first tag belongs to `speaker`; after a tag, text
    belongs to the tagged name until the next tag.
    """
    segments: list[str] = []
    current: str | None = speaker
    last = 0
    for match in _SPEAKER_TAG.finditer(text):
        if last < match.start() and current == speaker:
            segments.append(text[last:match.start()])
        current = match.group(1)
        last = match.end()
    if last < len(text) and current == speaker:
        segments.append(text[last:])
    return "".join(segments).strip()


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------

_SENTENCE_END = re.compile(r"[。？！?!]")
_DOUBLE_CORNER = re.compile(r"『([^『』]+)』")
_CORNER = re.compile(r"「([^「」]+)」")


def _keep_quotes(content: str) -> bool:
    return bool(_SENTENCE_END.search(content)) or len(content) > 10


def clean_excessive_quotes(text: str) -> str:
    """Drop quotation marks used only for emphasis.

    『』 is removed unless it wraps a full sentence or more than ten
    characters. 「」 gets the same test, except at line start or after a
    `*action*`, where it marks dialogue and always stays.
    """
    result = _DOUBLE_CORNER.sub(
        lambda m: m.group(0) if _keep_quotes(m.group(1)) else m.group(1), text
    )

    def _corner(match: re.Match[str]) -> str:
        line_start = result.rfind("\n", 0, match.start()) + 1
        before = result[line_start:match.start()].strip()
        if before == "" or before.endswith("*"):
            return match.group(0)
        if _keep_quotes(match.group(1)):
            return match.group(0)
        return match.group(1)

    return _CORNER.sub(_corner, result)


_QUOTE_PAIRS = [("「", "」"), ("“", "”"), ('"', '"')]


def unwrap_quoted_reply(text: str) -> str:
    """Return the inside of a reply that is one quoted span.

    Also handles `preamble「quote」` when the quoted part is at least 70% of
    the message. Replies with several quoted spans are left alone.
    """
    msg = text.strip()

    for open_q, close_q in _QUOTE_PAIRS:
        if len(msg) >= 2 and msg.startswith(open_q) and msg.endswith(close_q):
            inner = msg[1:-1]
            if not (open_q in inner and close_q in inner):
                return inner

    for open_q, close_q in _QUOTE_PAIRS:
        if not msg.endswith(close_q):
            continue
        open_index = msg.find(open_q)
        close_index = msg.rfind(close_q)
        if 0 < open_index < close_index:
            quoted = msg[open_index + 1:close_index]
            if open_q not in quoted and close_q not in quoted and len(quoted) >= len(msg) * 0.7:
                return quoted

    return msg


# ---------------------------------------------------------------------------
# Affection
# ---------------------------------------------------------------------------

_BARE_NUMBER = re.compile(r"[+-]?\d+")
_AFFECTION_TAG = re.compile(r"(?:好感度|affection)\s*[：:]\s*([+-]?\d+)", re.IGNORECASE)


def parse_affection(text: str) -> tuple[str, int | None]:
    """Split a trailing affection line off a reply.

    Returns (body, value). value is None when the last line is not a bare
    signed integer or an `affection: N` / `好感度：N` tag.
    """
    lines = text.strip().split("\n")
    last = lines[-1].strip()
    value: int | None = None
    if _BARE_NUMBER.fullmatch(last):
        value = int(last)
    else:
        tag = _AFFECTION_TAG.fullmatch(last)
        if tag:
            value = int(tag.group(1))
    if value is None:
        return text.strip(), None
    return "\n".join(lines[:-1]).strip(), value
