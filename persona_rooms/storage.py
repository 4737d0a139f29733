"""Persistence collaborator contract and an in-memory implementation.

The engine never persists anything itself; it hands every side effect to a
ConversationStore:

    append_message        transcript entries (canonical-id content)
    update_affection      participant affection after a reply
    upsert_memory_slot    short-term slot written at a fixed index
    append_memory_record  durable fact produced by promotion

All calls are synchronous in-memory mutations. InMemoryStore keeps plain
dicts and lists and returns copies so callers cannot mutate its state.
"""

from __future__ import annotations

from typing import Protocol

from persona_rooms.models import MemoryRecord, MemorySlot, Message, Participant, Room, UserProfile


class ConversationStore(Protocol):
    def append_message(self, message: Message) -> None: ...

    def get_messages(self, room_id: str) -> list[Message]: ...

    def update_affection(self, participant_id: str, value: int) -> None: ...

    def upsert_memory_slot(self, slot: MemorySlot, index: int) -> None: ...

    def delete_memory_scope(self, scope_id: str) -> None: ...

    def append_memory_record(self, record: MemoryRecord) -> None: ...

    def get_memory_records(self, scope_id: str) -> list[MemoryRecord]: ...


class InMemoryStore:
    def __init__(self, user: UserProfile | None = None) -> None:
        self.user = user or UserProfile()
        self._participants: dict[str, Participant] = {}
        self._rooms: dict[str, Room] = {}
        self._messages: dict[str, list[Message]] = {}
        self._slots: dict[str, list[MemorySlot]] = {}
        self._records: dict[str, list[MemoryRecord]] = {}

    # ------------------------------------------------------------------
    # Participants & rooms
    # ------------------------------------------------------------------

    def save_participant(self, participant: Participant) -> None:
        self._participants[participant.id] = participant.model_copy(deep=True)

    def get_participant(self, participant_id: str) -> Participant | None:
        p = self._participants.get(participant_id)
        return p.model_copy(deep=True) if p else None

    def get_participants(self) -> list[Participant]:
        return [p.model_copy(deep=True) for p in self._participants.values()]

    def save_room(self, room: Room) -> None:
        self._rooms[room.id] = room.model_copy(deep=True)

    def get_room(self, room_id: str) -> Room | None:
        room = self._rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    # ------------------------------------------------------------------
    # Transcript & affection
    # ------------------------------------------------------------------

    def append_message(self, message: Message) -> None:
        self._messages.setdefault(message.room_id, []).append(message.model_copy())

    def get_messages(self, room_id: str) -> list[Message]:
        return [m.model_copy() for m in self._messages.get(room_id, [])]

    def update_affection(self, participant_id: str, value: int) -> None:
        p = self._participants.get(participant_id)
        if p is None:
            raise KeyError(f"Unknown participant {participant_id!r}")
        self._participants[participant_id] = p.model_copy(update={"affection": value})

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    def upsert_memory_slot(self, slot: MemorySlot, index: int) -> None:
        slots = self._slots.setdefault(slot.scope_id, [])
        if index < len(slots):
            slots[index] = slot.model_copy()
        elif index == len(slots):
            slots.append(slot.model_copy())
        else:
            raise IndexError(f"Slot index {index} out of range for scope {slot.scope_id!r}")

    def get_memory_slots(self, scope_id: str) -> list[MemorySlot]:
        return [s.model_copy() for s in self._slots.get(scope_id, [])]

    def delete_memory_scope(self, scope_id: str) -> None:
        self._slots.pop(scope_id, None)
        self._records.pop(scope_id, None)

    def append_memory_record(self, record: MemoryRecord) -> None:
        self._records.setdefault(record.scope_id, []).append(record.model_copy())

    def get_memory_records(self, scope_id: str) -> list[MemoryRecord]:
        return [r.model_copy() for r in self._records.get(scope_id, [])]
