from persona_rooms.memory.buffer import InsertResult, MemoryBuffer, Summarizer  # noqa: F401
from persona_rooms.memory.promotion import (  # noqa: F401
    ConversationRecorder,
    LLMSummarizer,
    parse_facts,
    summarize_conversation,
)
