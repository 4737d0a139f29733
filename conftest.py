from pathlib import Path
from typing import Any

import pytest

from persona_rooms.config import get_config
from persona_rooms.llm.base import GenerateRequest, GenerateResponse, KeyCheck, PersonaReply, ReplyContext
from persona_rooms.llm.registry import reset_adapters
from persona_rooms.llm.reply import get_persona_reply
from persona_rooms.queue import reset_queues


class StubAdapter:
    """Adapter double that replays canned responses and records requests.

    Responses are GenerateResponse objects, plain strings (a normal reply) or
    exceptions (raised). `script` maps persona name → responses for that
    persona's turns; `responses` is the shared fallback list.
    """

    provider = "stub"

    def __init__(
        self,
        responses: list[Any] | None = None,
        script: dict[str, list[Any]] | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.script = {name: list(items) for name, items in (script or {}).items()}
        self.config = config
        self.requests: list[GenerateRequest] = []

    def _next(self, request: GenerateRequest) -> Any:
        name = request.description.removeprefix("reply: ")
        queue = self.script.get(name)
        if queue:
            return queue.pop(0)
        if self.responses:
            return self.responses.pop(0)
        return "..."

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        self.requests.append(request)
        item = self._next(request)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return GenerateResponse(text=item)
        return item

    async def validate_key(self, api_key: str) -> KeyCheck:
        return KeyCheck(valid=bool(api_key))

    async def get_persona_reply(self, ctx: ReplyContext) -> PersonaReply:
        return await get_persona_reply(self, ctx, self.config)


@pytest.fixture(autouse=True)
def clean_registries():
    """Fresh queue and adapter registries for every test."""
    reset_queues()
    reset_adapters()
    yield
    reset_queues()
    reset_adapters()


@pytest.fixture
def config(tmp_path: Path, monkeypatch) -> dict[str, Any]:
    """Default config with every queue fast enough to never wait."""
    for var in ("PERSONA_ROOMS_PROVIDER", "PERSONA_ROOMS_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    cfg = get_config(tmp_path / "settings.json")
    for queue in cfg["queues"].values():
        queue.update(rpm=60000, jitter_ms=0)
    return cfg


@pytest.fixture
def make_adapter(config):
    def _make(responses=None, script=None) -> StubAdapter:
        return StubAdapter(responses=responses, script=script, config=config)
    return _make
