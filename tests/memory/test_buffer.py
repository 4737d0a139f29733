"""Tests for persona_rooms.memory.buffer: slot policy, promotion, scope locking."""

import asyncio

import pytest

from persona_rooms.memory.buffer import MemoryBuffer
from persona_rooms.storage import InMemoryStore


class FakeSummarizer:
    """Returns one fact per slot and records what it was given."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[list[str]] = []

    async def __call__(self, scope_id, slots):
        self.calls.append([s.content for s in slots])
        if self.fail:
            raise RuntimeError("summarizer down")
        return [f"fact:{s.content}" for s in slots]


async def _fill(buffer: MemoryBuffer, scope: str = "room", n: int = 6) -> None:
    for i in range(n):
        assert (await buffer.insert(scope, f"m{i}")).status == "inserted"


class TestInsert:
    async def test_fills_free_slots_in_order(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        assert [s.content for s in buf.slots("room")] == [f"m{i}" for i in range(6)]
        assert all(not s.processed for s in buf.slots("room"))

    async def test_full_and_unprocessed_needs_flush(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        result = await buf.insert("room", "m6")
        assert result.needs_flush
        assert result.slot is None
        assert len(buf.slots("room")) == 6

    async def test_scopes_are_independent(self) -> None:
        buf = MemoryBuffer(capacity=1)
        await buf.insert("a", "x")
        assert (await buf.insert("b", "y")).status == "inserted"
        assert (await buf.insert("a", "z")).needs_flush

    async def test_slots_mirrored_to_store(self) -> None:
        store = InMemoryStore()
        buf = MemoryBuffer(store=store)
        await buf.insert("room", "hello", provenance="manual")
        [slot] = store.get_memory_slots("room")
        assert slot.content == "hello"
        assert slot.provenance == "manual"

    def test_capacity_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            MemoryBuffer(capacity=0)

    def test_capacity_from_config(self, config) -> None:
        config["engine"]["memory_capacity"] = 2
        assert MemoryBuffer.from_config(config).capacity == 2


class TestPromotion:
    async def test_promote_marks_processed_and_writes_records(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        summarizer = FakeSummarizer()
        records = await buf.promote("room", summarizer, source_room_id="room")
        assert len(records) == 6
        assert all(s.processed for s in buf.slots("room"))
        assert [r.content for r in buf.records("room")][0] == "fact:m0"
        assert records[0].source_room_id == "room"

    async def test_insert_after_promote_overwrites_oldest(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        await buf.promote("room", FakeSummarizer())
        result = await buf.insert("room", "m6")
        assert result.status == "overwritten"
        assert result.index == 0
        second = await buf.insert("room", "m7")
        assert second.index == 1
        slots = buf.slots("room")
        assert [s.content for s in slots[:3]] == ["m6", "m7", "m2"]
        assert slots[0].processed is False

    async def test_only_unprocessed_slots_are_summarized(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        await buf.promote("room", FakeSummarizer())
        await buf.insert("room", "new")
        summarizer = FakeSummarizer()
        await buf.promote("room", summarizer)
        assert summarizer.calls == [["new"]]

    async def test_nothing_to_promote(self) -> None:
        buf = MemoryBuffer()
        summarizer = FakeSummarizer()
        assert await buf.promote("room", summarizer) == []
        assert summarizer.calls == []

    async def test_summarizer_failure_leaves_slots_unprocessed(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        with pytest.raises(RuntimeError):
            await buf.promote("room", FakeSummarizer(fail=True))
        assert all(not s.processed for s in buf.slots("room"))
        assert buf.records("room") == []
        assert (await buf.insert("room", "again")).needs_flush

    async def test_insert_or_flush_promotes_when_full(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        summarizer = FakeSummarizer()
        result = await buf.insert_or_flush("room", "m6", summarizer)
        assert result.status == "overwritten"
        assert result.index == 0
        assert len(summarizer.calls) == 1
        assert len(buf.records("room")) == 6

    async def test_records_keep_slot_provenance(self) -> None:
        buf = MemoryBuffer()
        await buf.insert("room", "生日是五月", provenance="manual")
        await buf.insert("room", "聊到天氣")
        summarizer = FakeSummarizer()
        records = await buf.promote("room", summarizer)
        assert summarizer.calls == [["生日是五月"], ["聊到天氣"]]
        assert [(r.content, r.provenance) for r in records] == [
            ("fact:生日是五月", "manual"), ("fact:聊到天氣", "auto"),
        ]

    async def test_insert_or_flush_without_flush(self) -> None:
        buf = MemoryBuffer()
        summarizer = FakeSummarizer()
        result = await buf.insert_or_flush("room", "m0", summarizer)
        assert result.status == "inserted"
        assert summarizer.calls == []


class TestDeleteScope:
    async def test_delete_clears_slots_and_records(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        await buf.promote("room", FakeSummarizer())
        await buf.delete_scope("room")
        assert buf.slots("room") == []
        assert buf.records("room") == []
        assert (await buf.insert("room", "fresh")).index == 0

    async def test_delete_waits_for_running_promotion(self) -> None:
        buf = MemoryBuffer()
        await _fill(buf)
        gate = asyncio.Event()

        async def slow_summarizer(scope_id, slots):
            await gate.wait()
            return ["late fact"]

        promotion = asyncio.create_task(buf.promote("room", slow_summarizer))
        await asyncio.sleep(0)
        deletion = asyncio.create_task(buf.delete_scope("room"))
        await asyncio.sleep(0)
        assert not deletion.done()
        assert len(buf.slots("room")) == 6

        gate.set()
        await promotion
        await deletion
        assert buf.slots("room") == []
        assert buf.records("room") == []


class TestScopeLock:
    async def test_insert_waits_for_running_promotion(self) -> None:
        buf = MemoryBuffer()
        await buf.insert("room", "one")
        gate = asyncio.Event()
        seen: list[list[str]] = []

        async def slow_summarizer(scope_id, slots):
            seen.append([s.content for s in slots])
            await gate.wait()
            return ["fact"]

        promotion = asyncio.create_task(buf.promote("room", slow_summarizer))
        await asyncio.sleep(0)
        insertion = asyncio.create_task(buf.insert("room", "two"))
        await asyncio.sleep(0)
        assert not insertion.done()

        gate.set()
        await promotion
        await insertion
        assert seen == [["one"]]
        assert [(s.content, s.processed) for s in buf.slots("room")] == [("one", True), ("two", False)]
