"""Bounded short-term memory with capacity-triggered promotion.

Each scope (a room or a participant) holds at most `capacity` slots:

  free slot                 → append, processed=False
  full, some processed      → overwrite the least recently inserted
                              processed slot at its own index
  full, none processed      → reject with "needs_flush"

Promotion summarizes the unprocessed slots into MemoryRecords and then marks
them processed; slots are never cleared, they only become overwritable. So a
new entry can only land once older ones are promoted or were already
promoted and get overwritten.

insert(), promote(), insert_or_flush() and delete_scope() on one scope are
serialized by an asyncio.Lock, so nothing lands in or vanishes from a scope
while its promotion awaits the summarizer.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel

from persona_rooms.config import engine_setting
from persona_rooms.models import MemoryRecord, MemorySlot, Provenance
from persona_rooms.storage import ConversationStore, InMemoryStore

logger = logging.getLogger(__name__)

InsertStatus = Literal["inserted", "overwritten", "needs_flush"]

# (scope_id, unprocessed slots) → durable facts, one string each
Summarizer = Callable[[str, list[MemorySlot]], Awaitable[list[str]]]


class InsertResult(BaseModel):
    status: InsertStatus
    slot: MemorySlot | None = None
    index: int | None = None

    @property
    def needs_flush(self) -> bool:
        return self.status == "needs_flush"


class MemoryBuffer:
    def __init__(self, capacity: int = 6, store: ConversationStore | None = None) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.store = store if store is not None else InMemoryStore()
        self._slots: dict[str, list[MemorySlot]] = {}
        self._inserted: dict[str, int] = {}  # slot id → insertion sequence
        self._seq = itertools.count()
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: dict[str, Any], store: ConversationStore | None = None) -> MemoryBuffer:
        return cls(capacity=int(engine_setting(config, "memory_capacity")), store=store)

    def _lock(self, scope_id: str) -> asyncio.Lock:
        return self._locks.setdefault(scope_id, asyncio.Lock())

    def slots(self, scope_id: str) -> list[MemorySlot]:
        return [s.model_copy() for s in self._slots.get(scope_id, [])]

    def records(self, scope_id: str) -> list[MemoryRecord]:
        return self.store.get_memory_records(scope_id)

    # ------------------------------------------------------------------
    # Insert
    # ------------------------------------------------------------------

    def _write(self, slots: list[MemorySlot], index: int, slot: MemorySlot) -> None:
        if index == len(slots):
            slots.append(slot)
        else:
            self._inserted.pop(slots[index].id, None)
            slots[index] = slot
        self._inserted[slot.id] = next(self._seq)
        self.store.upsert_memory_slot(slot, index)

    def _insert_locked(self, scope_id: str, content: str, provenance: Provenance) -> InsertResult:
        slots = self._slots.setdefault(scope_id, [])
        slot = MemorySlot(scope_id=scope_id, content=content, provenance=provenance)

        if len(slots) < self.capacity:
            index = len(slots)
            self._write(slots, index, slot)
            logger.debug("memory %s: inserted slot %d", scope_id, index)
            return InsertResult(status="inserted", slot=slot, index=index)

        processed = [i for i, s in enumerate(slots) if s.processed]
        if not processed:
            logger.info("memory %s: all %d slots unprocessed, needs flush", scope_id, self.capacity)
            return InsertResult(status="needs_flush")

        index = min(processed, key=lambda i: self._inserted.get(slots[i].id, -1))
        self._write(slots, index, slot)
        logger.debug("memory %s: overwrote processed slot %d", scope_id, index)
        return InsertResult(status="overwritten", slot=slot, index=index)

    async def insert(self, scope_id: str, content: str, provenance: Provenance = "auto") -> InsertResult:
        """Apply the slot policy once. Waits for any promotion running on the scope."""
        async with self._lock(scope_id):
            return self._insert_locked(scope_id, content, provenance)

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    async def _promote_locked(
        self,
        scope_id: str,
        summarizer: Summarizer,
        source_room_id: str | None,
    ) -> list[MemoryRecord]:
        slots = self._slots.get(scope_id, [])
        pending = [s for s in slots if not s.processed]
        if not pending:
            return []

        # one summarizer call per provenance so records keep their origin
        groups: dict[Provenance, list[MemorySlot]] = {}
        for slot in pending:
            groups.setdefault(slot.provenance, []).append(slot)
        extracted = []
        for provenance, group in groups.items():
            facts = await summarizer(scope_id, [s.model_copy() for s in group])
            extracted.extend((provenance, fact) for fact in facts)

        records = []
        for provenance, fact in extracted:
            record = MemoryRecord(
                scope_id=scope_id, content=fact,
                provenance=provenance, source_room_id=source_room_id,
            )
            self.store.append_memory_record(record)
            records.append(record)

        summarized = {s.id for s in pending}
        for index, slot in enumerate(slots):
            if slot.id in summarized:
                slots[index] = slot.model_copy(update={"processed": True})
                self.store.upsert_memory_slot(slots[index], index)

        logger.info("memory %s: promoted %d slot(s) into %d record(s)", scope_id, len(pending), len(records))
        return records

    async def promote(
        self,
        scope_id: str,
        summarizer: Summarizer,
        source_room_id: str | None = None,
    ) -> list[MemoryRecord]:
        """Summarize unprocessed slots into records, then mark them processed.

        If the summarizer raises, nothing is marked and the error propagates.
        """
        async with self._lock(scope_id):
            return await self._promote_locked(scope_id, summarizer, source_room_id)

    async def insert_or_flush(
        self,
        scope_id: str,
        content: str,
        summarizer: Summarizer,
        provenance: Provenance = "auto",
        source_room_id: str | None = None,
    ) -> InsertResult:
        """Insert; on needs_flush promote and insert again, all under the scope lock."""
        async with self._lock(scope_id):
            result = self._insert_locked(scope_id, content, provenance)
            if not result.needs_flush:
                return result
            await self._promote_locked(scope_id, summarizer, source_room_id)
            return self._insert_locked(scope_id, content, provenance)

    async def delete_scope(self, scope_id: str) -> None:
        """Drop a scope's slots and records, waiting for any in-flight promotion."""
        async with self._lock(scope_id):
            for slot in self._slots.pop(scope_id, []):
                self._inserted.pop(slot.id, None)
            self.store.delete_memory_scope(scope_id)
            logger.info("memory %s: scope deleted", scope_id)
