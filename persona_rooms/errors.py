"""Error taxonomy for the conversation engine.

Every failure the engine can hand back to the surrounding application is a
subclass of ChatEngineError, so callers can catch the whole family or one
classification. Turn-level failures (ContentBlocked, Truncated, EmptyReply,
LLMError) end only the turn that raised them; the scheduler records the
exception and keeps going.

InvalidMention and CycleDetected are kept in the taxonomy for completeness:
mention cleanup drops unknown ids silently and the loop guard reports a
termination reason instead of raising.
"""

from __future__ import annotations


class ChatEngineError(Exception):
    """Base class for every error raised by persona_rooms."""


# ---------------------------------------------------------------------------
# Generation failures
# ---------------------------------------------------------------------------

class LLMError(ChatEngineError, RuntimeError):
    """Raised when the generation backend cannot be reached or returns garbage."""


class ContentBlocked(ChatEngineError):
    """The provider refused to answer on moderation grounds.

    Only raised to callers after every tier of the degradation ladder has
    been tried.
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Content blocked: {reason}")


class Truncated(ChatEngineError):
    """The reply hit the output-length cap before finishing."""


class EmptyReply(ChatEngineError):
    """The provider returned no text and no recognisable block reason."""


# ---------------------------------------------------------------------------
# Engine conditions
# ---------------------------------------------------------------------------

class InvalidMention(ChatEngineError):
    """An @id token referenced an id that is not in the name map."""


class CycleDetected(ChatEngineError):
    """Two consecutive rounds had the same candidate set."""


class QueueCancelled(ChatEngineError):
    """A queued request was dropped by RateLimitedQueue.clear()."""


class ProviderNotFound(ChatEngineError, LookupError):
    """No generation adapter is registered under the requested provider name."""


class PromptError(ChatEngineError):
    """Raised when a Handlebars template fails to compile or render."""
