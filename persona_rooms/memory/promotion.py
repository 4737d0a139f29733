"""Model-backed summarization for the memory buffer.

LLMSummarizer is the default promotion step: it asks the lite tier to pull
long-term facts out of the short-term slots, one fact per line, with "無" or
"none" meaning nothing worth keeping.

summarize_conversation() condenses a stretch of transcript into one
short-term memory entry; ConversationRecorder wires both together as the
scheduler's post-exchange memory hook.
"""

from __future__ import annotations

import logging
from typing import Any

from persona_rooms.config import get_config
from persona_rooms.errors import ContentBlocked, EmptyReply
from persona_rooms.llm.base import ChatTurn, GenerateRequest, LLMAdapter, SafetyTier
from persona_rooms.llm.registry import resolve_adapter
from persona_rooms.memory.buffer import InsertResult, MemoryBuffer
from persona_rooms.mentions import to_display
from persona_rooms.models import MemorySlot, Message, Room

logger = logging.getLogger(__name__)

_NO_FACTS = {"無", "none"}

EXTRACT_SYSTEM = """\
你是一個小說創作輔助系統，專門從劇情摘要中提取需要長期記住的重要資訊。
請提取：角色的個人資訊（生日、喜好、職業、重要經歷）、重要的承諾或約定、關鍵事件的轉折點、特殊偏好或習慣。

輸出格式：
- 每條長期記憶一行，簡潔明確，不超過 30 字
- 不要編號或前綴
- 如果沒有需要保存的重要資訊，直接輸出「無」"""

SUMMARY_SYSTEM = """\
你是一個小說創作輔助系統，專門整理虛構故事的劇情摘要。
請用 1-2 句話總結這段對話的重點：關鍵事件或話題、情緒或態度的變化、需要記住的具體資訊。
只輸出摘要內容，不要加任何前綴或說明。"""


def parse_facts(text: str) -> list[str]:
    """One fact per non-empty line; "無" / "none" alone means no facts."""
    text = text.strip()
    if not text or text.lower() in _NO_FACTS:
        return []
    return [
        line.strip() for line in text.split("\n")
        if line.strip() and line.strip().lower() not in _NO_FACTS
    ]


class LLMSummarizer:
    """Promotion step backed by the lite generation tier.

    Args:
        adapter: Adapter to call; resolved from config at call time when None.
        safety:  Safety tier for the extraction request.
        config:  Full config dict.
    """

    def __init__(
        self,
        adapter: LLMAdapter | None = None,
        safety: SafetyTier = "strict",
        config: dict[str, Any] | None = None,
    ) -> None:
        self._adapter = adapter
        self._safety = safety
        self._config = config

    async def __call__(self, scope_id: str, slots: list[MemorySlot]) -> list[str]:
        adapter = self._adapter or resolve_adapter(None, self._config)
        numbered = "\n".join(f"{i + 1}. {slot.content}" for i, slot in enumerate(slots))
        request = GenerateRequest(
            system=EXTRACT_SYSTEM,
            turns=[ChatTurn(role="user", text=f"短期記憶：\n{numbered}\n\n請開始分析：")],
            tier="lite",
            safety=self._safety,
            temperature=0.3,
            description=f"memory extraction: {scope_id}",
        )
        response = await adapter.generate(request)
        if response.blocked:
            raise ContentBlocked(response.block_reason or "unknown", f"Memory extraction blocked for {scope_id}")
        facts = parse_facts(response.text)
        logger.debug("memory extraction %s: %d fact(s) from %d slot(s)", scope_id, len(facts), len(slots))
        return facts


async def summarize_conversation(
    messages: list[Message],
    adapter: LLMAdapter,
    id_to_name: dict[str, str] | None = None,
    safety: SafetyTier = "strict",
) -> str:
    """Condense messages into a one or two sentence short-term memory."""
    lines = []
    for m in messages:
        content = to_display(m.content, id_to_name) if id_to_name else m.content
        lines.append(f"{m.sender_name}: {content}")
    request = GenerateRequest(
        system=SUMMARY_SYSTEM,
        turns=[ChatTurn(role="user", text="對話內容：\n" + "\n".join(lines))],
        tier="lite",
        safety=safety,
        temperature=0.3,
        description="conversation summary",
    )
    response = await adapter.generate(request)
    if response.blocked:
        raise ContentBlocked(response.block_reason or "unknown", "Conversation summary blocked")
    summary = response.text.strip()
    if not summary:
        raise EmptyReply("Conversation summary came back empty")
    return summary


class ConversationRecorder:
    """Post-exchange hook: summarize the exchange into the room's buffer.

    Without an explicit buffer one is built from engine.memory_capacity.
    """

    def __init__(
        self,
        buffer: MemoryBuffer | None = None,
        adapter: LLMAdapter | None = None,
        summarizer: LLMSummarizer | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self._adapter = adapter
        self._config = config if config is not None else get_config()
        self.buffer = buffer if buffer is not None else MemoryBuffer.from_config(self._config)
        self._summarizer = summarizer or LLMSummarizer(adapter, config=self._config)

    async def __call__(
        self,
        room: Room,
        messages: list[Message],
        id_to_name: dict[str, str] | None = None,
    ) -> InsertResult | None:
        chat = [m for m in messages if m.type == "chat" and m.content]
        if not chat:
            return None
        adapter = self._adapter or resolve_adapter(None, self._config)
        summary = await summarize_conversation(chat, adapter, id_to_name)
        return await self.buffer.insert_or_flush(
            room.id, summary, self._summarizer, source_room_id=room.id,
        )
