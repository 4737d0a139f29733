"""Handlebars persona instructions.

render_prompt() compiles and caches templates; build_persona_context()
assembles the variables a persona template can use:

    persona.*   name, age, personality, speaking_style, system_prompt
    user.*      nickname, age, global_system_prompt
    room.*      name, is_group
    relation.*  affection, level, is_romantic
    members     [{name, handle, status}] for the group id table
    memories    long-term facts, short_memories recent ones
    now         formatted current time
    woken       true when pulled into a broadcast while away/offline
    adult       relaxed safety tier in effect
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import pybars

from persona_rooms.errors import PromptError
from persona_rooms.models import Participant, Presence, Room, UserProfile
from persona_rooms.relationships import LEVEL_LABELS, relationship_level

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Default persona template ─────────────────────────────

_STATUS_TEXT = {"online": "在線", "away": "忙碌中", "offline": "離線"}

# Block tags always share a line with text: pybars drops lines that hold
# nothing but block tags, newline included.
PERSONA_TEMPLATE = """\
你是 {{{persona.name}}}。{{#if persona.age}}年齡：{{{persona.age}}}。{{/if}}{{#if persona.personality}}
個性：{{{persona.personality}}}{{/if}}{{#if persona.speaking_style}}
說話風格：{{{persona.speaking_style}}}{{/if}}

## 目前情境
目前時間：{{{now}}}

## 對話對象資訊
暱稱：{{{user.nickname}}}{{#if user.age}}
年齡：{{{user.age}}}{{/if}}

## 與 {{{user.nickname}}} 的關係
關係等級：{{{relation.label}}}
親密度：{{{relation.affection}}}
{{#if relation.is_romantic}}關係發展方向：允許發展戀愛關係{{else}}關係發展方向：純友情路線{{/if}}
每次回應的最後一行必須輸出更新後的好感度數值（純數字，可以是負數）。{{#if room.is_group}}

## 群聊參與者{{#if room.name}}（{{{room.name}}}）{{/if}}
- 全體成員：@all
- {{{user.nickname}}}：@user（永遠在線）{{#each members}}
- {{{name}}}：@{{{handle}}}（{{{status}}}）{{/each}}{{/if}}{{#if memories}}

## 重要記憶{{#each memories}}
- {{{this}}}{{/each}}{{/if}}{{#if short_memories}}

## 近期記憶{{#last short_memories 6}}
- {{{this}}}{{/last}}{{/if}}

---
請以 {{{persona.name}}} 的身份，用符合角色性格和說話風格的方式自然地回應對話。
- 只輸出要傳送的文字，禁止輸出角色標籤或旁白說明。
- 不要用『』強調詞彙。{{#if room.is_group}}
- 專心扮演 {{{persona.name}}}，禁止代替其他角色說話或行動。
- 提到特定對象時使用上方對照表中的 @ID；呼叫所有人用 @all，呼叫 {{{user.nickname}}} 用 @user。{{/if}}{{#if adult}}
- 雙方皆已成年，可依角色性格自然描寫成人之間的情感與親密互動。{{else}}
- 保持全年齡向內容，不描寫露骨或成人情節。{{/if}}{{#if woken}}

## 特殊狀態：離線被打擾
你目前處於離線或忙碌狀態，但被 @all 打擾了。請依你的性格簡短表達反應。
回應完後，除非再次被直接 @，否則不要繼續參與對話。{{/if}}{{#if persona.system_prompt}}

{{{persona.system_prompt}}}{{/if}}{{#if user.global_system_prompt}}

{{{user.global_system_prompt}}}{{/if}}"""


def build_persona_context(
    persona: Participant,
    user: UserProfile,
    room: Room,
    *,
    members: Iterable[Participant] = (),
    presence: dict[str, Presence] | None = None,
    use_ordinals: bool = False,
    memories: list[str] | None = None,
    short_memories: list[str] | None = None,
    woken: bool = False,
    adult: bool = False,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Assemble template variables for one persona turn.

    `members` are the room's participants in roster order; with use_ordinals
    each member's handle is its 1-based position instead of its id.
    """
    presence = presence or {}
    member_rows = []
    for index, member in enumerate(members):
        if member.id == persona.id and not use_ordinals:
            continue
        member_rows.append({
            "name": member.name,
            "handle": str(index + 1) if use_ordinals else member.id,
            "status": _STATUS_TEXT[presence.get(member.id, "online")],
        })

    level = relationship_level(persona.affection)
    return {
        "persona": {
            "name": persona.name,
            "age": "" if persona.age is None else str(persona.age),
            "personality": persona.personality,
            "speaking_style": persona.speaking_style,
            "system_prompt": persona.system_prompt.strip(),
        },
        "user": {
            "nickname": user.nickname,
            "age": "" if user.age is None else str(user.age),
            "global_system_prompt": user.global_system_prompt.strip(),
        },
        "room": {"name": room.name, "is_group": room.is_group},
        "relation": {
            "affection": str(persona.affection),
            "level": level,
            "label": LEVEL_LABELS[level],
            "is_romantic": persona.is_romantic,
        },
        "members": member_rows,
        "memories": memories or [],
        "short_memories": short_memories or [],
        "now": (now or datetime.now()).strftime("%Y-%m-%d %H:%M"),
        "woken": woken,
        "adult": adult,
    }


def persona_instructions(context: dict[str, Any], template: str = PERSONA_TEMPLATE) -> str:
    return render_prompt(template, context).strip()
