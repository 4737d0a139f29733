"""Tests for persona_rooms.pipeline.core: full exchanges against a stub adapter."""

import random
from datetime import datetime
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from persona_rooms.errors import LLMError, QueueCancelled
from persona_rooms.llm.base import GenerateResponse
from persona_rooms.llm.http import HttpAdapter
from persona_rooms.memory import MemoryBuffer
from persona_rooms.models import Message, Participant, PresencePeriod, PresenceSchedule, Room, UserProfile
from persona_rooms.pipeline import ExchangeContext, run_exchange, send_user_message
from persona_rooms.storage import InMemoryStore

NOW = datetime(2024, 5, 20, 14, 0)
USER = UserProfile(nickname="阿童", age=25)
BLOCKED = GenerateResponse(finish_reason="blocked", blocked=True, block_reason="SAFETY")


def _all_day(status: str) -> PresenceSchedule:
    return PresenceSchedule(workday_periods=[PresencePeriod(start=0, end=24, status=status)])


class ScriptedRandom(random.Random):
    """random() returns the scripted values, then 0.99; shuffle keeps order."""

    def __init__(self, values=()) -> None:
        super().__init__(0)
        self.values = list(values)

    def random(self) -> float:
        return self.values.pop(0) if self.values else 0.99

    def shuffle(self, x) -> None:
        return None


def _setup(adapter, config, *, b_status: str | None = None, mode: str = "group", rng_values=(), **kw):
    a = Participant(id="pa", name="張三", age=30, affection=10)
    b = Participant(id="pb", name="李四", age=28, schedule=_all_day(b_status) if b_status else None)
    store = InMemoryStore(USER)
    for p in (a, b):
        store.save_participant(p)
    roster = ["pa", "pb"] if mode == "group" else ["pa"]
    room = Room(id="r1", name="茶會", roster=roster, mode=mode)
    ctx = ExchangeContext(
        room=room,
        user=USER,
        participants={"pa": a, "pb": b},
        store=store,
        config=config,
        rng=ScriptedRandom(rng_values),
        now=NOW,
        adapter_for=lambda p: adapter,
        **kw,
    )
    return ctx, store


def _user(content: str) -> Message:
    return Message(room_id="r1", sender_id="user", sender_name="阿童", content=content)


def _system_for(adapter, name: str) -> list[str]:
    return [r.system for r in adapter.requests if r.description == f"reply: {name}"]


# ---------------------------------------------------------------------------
# Activation inside an exchange
# ---------------------------------------------------------------------------

class TestBroadcast:
    async def test_online_replies_away_declines(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["大家午安"]})
        ctx, store = _setup(adapter, config, b_status="away", rng_values=[0.0, 0.7])

        result = await run_exchange(_user("@all 午安"), ctx)

        assert [m.sender_id for m in result.replies] == ["pa"]
        assert [(u.participant_id, u.reason) for u in result.unable_to_respond] == [("pb", "away")]
        assert result.termination == "no_candidates"
        assert result.rounds == 1
        assert [m.content for m in store.get_messages("r1")] == ["@all 午安", "大家午安"]

    async def test_woken_member_gets_woken_prompt(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["午安"], "李四": ["我在忙…"]})
        ctx, _ = _setup(adapter, config, b_status="away", rng_values=[0.0, 0.3])

        result = await run_exchange(_user("@all 午安"), ctx)

        assert [m.sender_id for m in result.replies] == ["pa", "pb"]
        assert result.unable_to_respond == []
        assert "離線被打擾" in _system_for(adapter, "李四")[0]
        assert "離線被打擾" not in _system_for(adapter, "張三")[0]

    async def test_offline_member_not_mentioned_is_skipped(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["嗨"]})
        ctx, _ = _setup(adapter, config, b_status="offline")

        result = await run_exchange(_user("大家好"), ctx)

        assert [m.sender_id for m in result.replies] == ["pa"]
        assert result.unable_to_respond == []
        assert _system_for(adapter, "李四") == []


class TestRounds:
    async def test_mention_chain(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["@2 你覺得呢"], "李四": ["嗯", "好啊"]})
        ctx, _ = _setup(adapter, config)

        result = await run_exchange(_user("@pa 週末去爬山？"), ctx)

        assert [(m.sender_id, m.content) for m in result.replies] == [
            ("pa", "@pb 你覺得呢"), ("pb", "嗯"), ("pb", "好啊"),
        ]
        assert result.rounds == 2
        assert result.termination == "no_candidates"
        # round 2 trigger for 李四 is 張三's reply
        last_request = adapter.requests[-1]
        assert last_request.turns[-1].text == "[張三]: @2 你覺得呢"

    async def test_cycle_detected(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["@2 你呢"], "李四": ["@1 你呢"]})
        ctx, _ = _setup(adapter, config)

        result = await run_exchange(_user("@pa 在嗎"), ctx)

        assert result.termination == "cycle"
        assert result.rounds == 1
        assert len(result.replies) == 2

    async def test_round_cap(self, make_adapter, config) -> None:
        config["engine"]["max_rounds"] = 2
        adapter = make_adapter(script={"張三": ["@2 ?", "@2 ?"], "李四": ["@1 ?"]})
        ctx, _ = _setup(adapter, config, b_status="offline", rng_values=[0.0, 0.0])

        result = await run_exchange(_user("@pa hi"), ctx)

        assert result.termination == "round_cap"
        assert result.rounds == 2
        assert [m.sender_id for m in result.replies] == ["pa", "pb"]

    async def test_no_candidates_at_all(self, make_adapter, config) -> None:
        adapter = make_adapter()
        ctx, store = _setup(adapter, config, b_status="away")
        ctx.participants["pa"] = ctx.participants["pa"].model_copy(update={"schedule": _all_day("offline")})

        result = await run_exchange(_user("有人嗎"), ctx)

        assert result.rounds == 0
        assert result.termination == "no_candidates"
        assert adapter.requests == []
        assert len(store.get_messages("r1")) == 1


# ---------------------------------------------------------------------------
# Turn outcomes
# ---------------------------------------------------------------------------

class TestTurnFailures:
    async def test_failure_skips_only_that_turn(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": [LLMError("backend down")], "李四": ["我來回答"]})
        ctx, _ = _setup(adapter, config)

        result = await run_exchange(_user("@all 問個問題"), ctx)

        assert [m.sender_id for m in result.replies] == ["pb"]
        assert [(f.participant_id, f.kind, f.round) for f in result.failures] == [("pa", "LLMError", 1)]
        assert isinstance(result.failures[0].error, LLMError)

    async def test_blocked_on_every_tier(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": [BLOCKED, BLOCKED, BLOCKED], "李四": ["ok"]})
        ctx, _ = _setup(adapter, config)

        result = await run_exchange(_user("@all hi"), ctx)

        assert [f.kind for f in result.failures] == ["ContentBlocked"]
        assert [m.sender_id for m in result.replies] == ["pb"]

    async def test_queue_cancellation_is_a_turn_failure(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": [QueueCancelled("cleared")], "李四": ["ok"]})
        ctx, _ = _setup(adapter, config)

        result = await run_exchange(_user("@all hi"), ctx)

        assert [f.kind for f in result.failures] == ["QueueCancelled"]

    async def test_dropped_connection_fails_each_turn(self, config) -> None:
        adapter = HttpAdapter(
            "openai", api_key="k", base_url="http://llm.test",
            main_model="big", lite_model="small", config=config,
        )
        ctx, store = _setup(adapter, config)

        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("reset"))):
            result = await run_exchange(_user("@all hi"), ctx)

        assert sorted(f.participant_id for f in result.failures) == ["pa", "pb"]
        assert {f.kind for f in result.failures} == {"LLMError"}
        assert result.replies == []
        assert len(store.get_messages("r1")) == 1

    async def test_empty_after_cleanup(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["@ghost"], "李四": ["ok"]})
        ctx, _ = _setup(adapter, config)

        result = await run_exchange(_user("@all hi"), ctx)

        assert [f.kind for f in result.failures] == ["EmptyReply"]
        assert [m.sender_id for m in result.replies] == ["pb"]

    async def test_reply_mentions_cleaned(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["@2 李四 你好，@2 李四 再見"]})
        ctx, _ = _setup(adapter, config, b_status="offline")

        result = await run_exchange(_user("@pa hi"), ctx)

        assert result.replies[0].content == "@pb 你好，李四 再見"


class TestAffection:
    async def test_absolute_update_persisted(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["謝謝你\n45"]})
        ctx, store = _setup(adapter, config, b_status="offline")

        result = await run_exchange(_user("@pa 送你花"), ctx)

        assert result.replies[0].content == "謝謝你"
        [change] = result.affection
        assert (change.before, change.after, change.silent) == (10, 45, False)
        assert store.get_participant("pa").affection == 45
        assert ctx.participants["pa"].affection == 45

    async def test_delta_mode(self, make_adapter, config) -> None:
        config["engine"]["affection_mode"] = "delta"
        adapter = make_adapter(script={"張三": ["哼\n-3"]})
        ctx, store = _setup(adapter, config, b_status="offline")

        await run_exchange(_user("@pa 遲到了"), ctx)

        assert store.get_participant("pa").affection == 7

    async def test_silent_update_posts_nothing(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["12"]})
        ctx, store = _setup(adapter, config, b_status="offline")

        result = await run_exchange(_user("@pa ..."), ctx)

        assert result.replies == []
        assert result.failures == []
        assert result.affection[0].silent is True
        assert store.get_participant("pa").affection == 12


# ---------------------------------------------------------------------------
# Room modes, entry point, memory hook
# ---------------------------------------------------------------------------

class TestSingleRoom:
    async def test_lone_persona_replies_once(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["@user 我在"]})
        ctx, _ = _setup(adapter, config, mode="single")

        result = await run_exchange(_user("在嗎"), ctx)

        assert result.termination == "single_room"
        assert result.rounds == 1
        assert result.replies[0].content == "@user 我在"
        assert "群聊參與者" not in adapter.requests[0].system

    async def test_away_persona_may_not_answer(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["never"]})
        ctx, _ = _setup(adapter, config, mode="single", rng_values=[0.95])
        ctx.participants["pa"] = ctx.participants["pa"].model_copy(update={"schedule": _all_day("away")})

        result = await run_exchange(_user("在嗎"), ctx)

        assert result.replies == []
        assert [u.reason for u in result.unable_to_respond] == ["away"]
        assert adapter.requests == []


class TestSendUserMessage:
    async def test_display_names_become_ids(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"李四": ["收到"]})
        ctx, store = _setup(adapter, config)
        ctx.participants["pa"] = ctx.participants["pa"].model_copy(update={"schedule": _all_day("offline")})

        result = await send_user_message("@李四 幫我問 @張三", ctx)

        trigger = store.get_messages("r1")[0]
        assert trigger.content == "@pb 幫我問 @pa"
        assert trigger.sender_name == "阿童"
        assert result.replies[0].sender_id == "pb"

    async def test_trigger_not_duplicated(self, make_adapter, config) -> None:
        adapter = make_adapter(script={"張三": ["hi"]})
        ctx, store = _setup(adapter, config, b_status="offline")
        trigger = _user("@pa hi")
        store.append_message(trigger)

        await run_exchange(trigger, ctx)

        assert [m.id for m in store.get_messages("r1")].count(trigger.id) == 1


class TestMemoryHook:
    async def test_recorder_receives_trigger_and_replies(self, make_adapter, config) -> None:
        calls = []

        async def recorder(room, messages, id_to_name):
            calls.append((room.id, [m.content for m in messages], id_to_name["pa"]))

        adapter = make_adapter(script={"張三": ["好"]})
        ctx, _ = _setup(adapter, config, b_status="offline", memory_recorder=recorder)

        await run_exchange(_user("@pa 明天見"), ctx)

        assert calls == [("r1", ["@pa 明天見", "好"], "張三")]

    async def test_recorder_failure_is_reported_not_raised(self, make_adapter, config) -> None:
        async def recorder(room, messages, id_to_name):
            raise LLMError("summary backend down")

        adapter = make_adapter(script={"張三": ["好"]})
        ctx, _ = _setup(adapter, config, b_status="offline", memory_recorder=recorder)

        result = await run_exchange(_user("@pa 明天見"), ctx)

        assert len(result.replies) == 1
        assert isinstance(result.memory_error, LLMError)

    async def test_memories_reach_the_prompt(self, make_adapter, config) -> None:
        buffer = MemoryBuffer()
        await buffer.insert("r1", "上次聊到爬山")
        adapter = make_adapter(script={"張三": ["記得"]})
        ctx, _ = _setup(adapter, config, b_status="offline", memory=buffer)

        await run_exchange(_user("@pa 還記得嗎"), ctx)

        assert "- 上次聊到爬山" in adapter.requests[0].system


@pytest.mark.parametrize("seed", [1, 2, 3])
async def test_seeded_runs_are_reproducible(make_adapter, config, seed) -> None:
    outcomes = []
    for _ in range(2):
        adapter = make_adapter(script={"張三": ["hi"], "李四": ["yo"]})
        ctx, _ = _setup(adapter, config, b_status="away")
        ctx.rng = random.Random(seed)
        result = await run_exchange(_user("@all hi"), ctx)
        outcomes.append(([m.sender_id for m in result.replies], [u.participant_id for u in result.unable_to_respond]))
    assert outcomes[0] == outcomes[1]
