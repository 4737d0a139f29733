from persona_rooms.llm.base import (  # noqa: F401
    ChatTurn,
    GenerateRequest,
    GenerateResponse,
    KeyCheck,
    LLMAdapter,
    PersonaReply,
    ReplyContext,
)
from persona_rooms.llm.http import HttpAdapter  # noqa: F401
from persona_rooms.llm.registry import (  # noqa: F401
    get_adapter,
    register_adapter,
    reset_adapters,
    resolve_adapter,
)
from persona_rooms.llm.reply import get_persona_reply  # noqa: F401
from persona_rooms.llm.safety import is_adult_conversation, parse_age, safety_tier  # noqa: F401
