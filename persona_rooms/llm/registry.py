"""Adapter registry keyed by provider name, resolved at call time."""

from __future__ import annotations

import logging
from typing import Any

from persona_rooms.config import get_config
from persona_rooms.errors import ProviderNotFound
from persona_rooms.llm.base import LLMAdapter
from persona_rooms.llm.http import PROVIDER_FORMATS, HttpAdapter
from persona_rooms.models import Participant

logger = logging.getLogger(__name__)

_adapters: dict[str, LLMAdapter] = {}


def register_adapter(adapter: LLMAdapter, name: str | None = None) -> None:
    _adapters[name or adapter.provider] = adapter


def reset_adapters() -> None:
    _adapters.clear()


def get_adapter(provider: str, config: dict[str, Any] | None = None) -> LLMAdapter:
    """Return the adapter registered for provider.

    Known HTTP providers are built from config on first use.
    """
    adapter = _adapters.get(provider)
    if adapter is not None:
        return adapter
    if provider in PROVIDER_FORMATS:
        adapter = HttpAdapter.from_config(provider, config)  # type: ignore[arg-type]
        _adapters[provider] = adapter
        return adapter
    raise ProviderNotFound(f"No generation adapter for provider {provider!r}")


def resolve_adapter(participant: Participant | None = None, config: dict[str, Any] | None = None) -> LLMAdapter:
    """Participant override first, then the configured default provider.

    An override naming an unknown provider falls back to the default.
    """
    config = config if config is not None else get_config()
    default = config.get("default_provider", "gemini")
    provider = (participant.provider if participant else None) or default
    try:
        return get_adapter(provider, config)
    except ProviderNotFound:
        if provider == default:
            raise
        logger.warning("provider %r not available for %s, using %r", provider, participant.id, default)
        return get_adapter(default, config)
