"""HTTP generation adapter: one class, three wire formats.

Supported providers:
  "gemini": POST /v1beta/models/{model}:generateContent
              Response: {"candidates": [{"content": {"parts": [{"text"}]}, "finishReason"}],
                         "promptFeedback": {"blockReason"}}
  "openai": POST /v1/chat/completions
              Response: {"choices": [{"message": {"content"}, "finish_reason"}]}
  "claude": POST /v1/messages
              Response: {"content": [{"type": "text", "text"}], "stop_reason"}

Every generate() call goes through the rate-limited queue for
(provider, tier). Transport failures surface as LLMError; moderation blocks
come back as GenerateResponse(blocked=True) so the reply ladder can retry.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx

from persona_rooms.config import get_config, model_name, sampling_settings
from persona_rooms.errors import LLMError
from persona_rooms.llm.base import (
    ChatTurn,
    FinishReason,
    GenerateRequest,
    GenerateResponse,
    KeyCheck,
    PersonaReply,
    ReplyContext,
    SafetyTier,
)
from persona_rooms.llm.reply import get_persona_reply
from persona_rooms.queue import get_queue

logger = logging.getLogger(__name__)

ProviderFormat = Literal["gemini", "openai", "claude"]
PROVIDER_FORMATS: tuple[str, ...] = ("gemini", "openai", "claude")

ANTHROPIC_VERSION = "2023-06-01"

# Gemini finish reasons that mean "blocked" when no text came back
BLOCKED_FINISH_REASONS = frozenset({"PROHIBITED_CONTENT", "BLOCKLIST", "SAFETY", "OTHER"})
# these block even when a partial candidate text came back
_MODERATION_FINISH_REASONS = BLOCKED_FINISH_REASONS - {"OTHER"}

_GEMINI_CATEGORIES = [
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]


def gemini_safety_settings(tier: SafetyTier) -> list[dict[str, str]]:
    threshold = "BLOCK_NONE" if tier == "relaxed" else "BLOCK_MEDIUM_AND_ABOVE"
    settings = [{"category": c, "threshold": threshold} for c in _GEMINI_CATEGORIES]
    settings.append({"category": "HARM_CATEGORY_CIVIC_INTEGRITY", "threshold": "BLOCK_ONLY_HIGH"})
    return settings


def _merge_roles(turns: list[ChatTurn]) -> list[ChatTurn]:
    """Join consecutive same-role turns; the messages API wants strict alternation."""
    merged: list[ChatTurn] = []
    for turn in turns:
        if merged and merged[-1].role == turn.role:
            merged[-1] = ChatTurn(role=turn.role, text=f"{merged[-1].text}\n{turn.text}")
        else:
            merged.append(turn)
    return merged


class HttpAdapter:
    """Async httpx client for one provider.

    Args:
        provider:   "gemini", "openai" or "claude"; selects the wire format.
        api_key:    Provider credential.
        base_url:   Base URL, e.g. "https://api.openai.com".
        main_model: Model used for the "main" tier.
        lite_model: Model used for the "lite" tier.
        timeout:    HTTP timeout in seconds. Defaults to 120.
        config:     Full config dict; supplies sampling defaults and queue limits.
    """

    def __init__(
        self,
        provider: ProviderFormat,
        api_key: str = "",
        base_url: str = "",
        main_model: str = "",
        lite_model: str = "",
        timeout: float = 120.0,
        config: dict[str, Any] | None = None,
    ) -> None:
        if provider not in PROVIDER_FORMATS:
            raise ValueError(f"Unsupported provider format {provider!r}")
        self.provider = provider
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._models = {"main": main_model, "lite": lite_model or main_model}
        self._timeout = timeout
        self._config = config if config is not None else get_config()

    @classmethod
    def from_config(cls, provider: ProviderFormat, config: dict[str, Any] | None = None) -> HttpAdapter:
        config = config if config is not None else get_config()
        conf = config.get("providers", {}).get(provider, {})
        return cls(
            provider,
            api_key=conf.get("api_key", ""),
            base_url=conf.get("base_url", ""),
            main_model=model_name(config, provider, "main"),
            lite_model=model_name(config, provider, "lite"),
            timeout=float(config.get("timeout", 120.0)),
            config=config,
        )

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    # -- request building ---------------------------------------------------

    def _headers(self, api_key: str | None = None) -> dict[str, str]:
        key = self._api_key if api_key is None else api_key
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.provider == "gemini":
            headers["x-goog-api-key"] = key
        elif self.provider == "claude":
            headers["x-api-key"] = key
            headers["anthropic-version"] = ANTHROPIC_VERSION
        elif key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _sampling(self, request: GenerateRequest) -> dict[str, Any]:
        defaults = sampling_settings(self._config)
        return {
            "temperature": defaults["temperature"] if request.temperature is None else request.temperature,
            "top_p": defaults["top_p"] if request.top_p is None else request.top_p,
            "top_k": defaults["top_k"] if request.top_k is None else request.top_k,
            "max_output_tokens": (
                defaults["max_output_tokens"] if request.max_output_tokens is None
                else request.max_output_tokens
            ),
        }

    def _build_request(self, request: GenerateRequest) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        model = self._models[request.tier]
        sampling = self._sampling(request)

        if self.provider == "openai":
            messages: list[dict[str, str]] = []
            if request.system:
                messages.append({"role": "system", "content": request.system})
            for turn in request.turns:
                role = "assistant" if turn.role == "model" else "user"
                messages.append({"role": role, "content": turn.text})
            body: dict = {
                "model": model,
                "messages": messages,
                "temperature": sampling["temperature"],
                "top_p": sampling["top_p"],
                "max_tokens": sampling["max_output_tokens"],
            }
            return f"{self._base_url}/v1/chat/completions", body

        if self.provider == "claude":
            body = {
                "model": model,
                "max_tokens": sampling["max_output_tokens"],
                "temperature": min(sampling["temperature"], 1.0),
                "top_k": sampling["top_k"],
                "messages": [
                    {"role": "assistant" if t.role == "model" else "user", "content": t.text}
                    for t in _merge_roles(request.turns)
                ],
            }
            if request.system:
                body["system"] = request.system
            return f"{self._base_url}/v1/messages", body

        # gemini
        body = {
            "contents": [
                {"role": turn.role, "parts": [{"text": turn.text}]}
                for turn in request.turns
            ],
            "safetySettings": gemini_safety_settings(request.safety),
            "generationConfig": {
                "temperature": sampling["temperature"],
                "topP": sampling["top_p"],
                "topK": sampling["top_k"],
                "maxOutputTokens": sampling["max_output_tokens"],
            },
        }
        if request.system:
            body["systemInstruction"] = {"parts": [{"text": request.system}]}
        return f"{self._base_url}/v1beta/models/{model}:generateContent", body

    # -- response parsing ---------------------------------------------------

    def _parse_response(self, data: dict) -> GenerateResponse:
        """Normalize the provider body into a GenerateResponse."""
        if self.provider == "openai":
            choices = data.get("choices")
            if not choices or "message" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI backend")
            text = choices[0]["message"].get("content") or ""
            raw = choices[0].get("finish_reason")
            finish: FinishReason = {"stop": "stop", "length": "length", "content_filter": "blocked"}.get(
                raw or "stop", "other"
            )
            blocked = finish == "blocked"
            return GenerateResponse(
                text="" if blocked else text, finish_reason=finish, blocked=blocked,
                block_reason=raw if blocked else None, raw_finish_reason=raw,
            )

        if self.provider == "claude":
            content = data.get("content")
            if content is None:
                raise LLMError("Unexpected response format from Claude backend")
            text = "".join(block.get("text", "") for block in content if block.get("type") == "text")
            raw = data.get("stop_reason")
            finish = {
                "end_turn": "stop", "stop_sequence": "stop",
                "max_tokens": "length", "refusal": "blocked",
            }.get(raw or "end_turn", "other")
            blocked = finish == "blocked"
            return GenerateResponse(
                text="" if blocked else text, finish_reason=finish, blocked=blocked,
                block_reason=raw if blocked else None, raw_finish_reason=raw,
            )

        # gemini
        prompt_block = (data.get("promptFeedback") or {}).get("blockReason")
        if prompt_block:
            return GenerateResponse(finish_reason="blocked", blocked=True, block_reason=prompt_block)

        candidates = data.get("candidates")
        if not candidates:
            raise LLMError("Unexpected response format from Gemini backend")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        raw = candidate.get("finishReason")
        if raw in _MODERATION_FINISH_REASONS or (raw in BLOCKED_FINISH_REASONS and not text):
            return GenerateResponse(
                finish_reason="blocked", blocked=True, block_reason=raw, raw_finish_reason=raw,
            )
        finish = {"STOP": "stop", "MAX_TOKENS": "length"}.get(raw or "STOP", "other")
        return GenerateResponse(text=text, finish_reason=finish, raw_finish_reason=raw)

    # -- calls ----------------------------------------------------------------

    async def _post(self, url: str, body: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to {self.provider} backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"{self.provider} backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"{self.provider} backend timed out after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise LLMError(f"{self.provider} request failed: {type(e).__name__}: {e}") from e

        try:
            return resp.json()
        except ValueError as e:
            raise LLMError(f"{self.provider} backend returned a non-JSON body") from e

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        url, body = self._build_request(request)
        description = request.description or f"{self.provider} {request.tier}"
        logger.debug(
            "llm call provider=%s tier=%s turns=%d safety=%s",
            self.provider, request.tier, len(request.turns), request.safety,
        )
        queue = get_queue(self.provider, request.tier, self._config)
        data = await queue.enqueue(lambda: self._post(url, body), description)

        response = self._parse_response(data)
        if response.blocked:
            logger.info("llm blocked provider=%s reason=%s", self.provider, response.block_reason)
        else:
            logger.debug(
                "llm response provider=%s finish=%s len=%d",
                self.provider, response.finish_reason, len(response.text),
            )
        return response

    async def validate_key(self, api_key: str) -> KeyCheck:
        """List models with the given key; no generation quota is spent."""
        if not api_key.strip():
            return KeyCheck(valid=False, error="API key is empty")
        suffix = "/v1beta/models" if self.provider == "gemini" else "/v1/models"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(f"{self._base_url}{suffix}", headers=self._headers(api_key))
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (400, 401, 403):
                return KeyCheck(valid=False, error=f"API key rejected (HTTP {status})")
            raise LLMError(f"{self.provider} backend returned HTTP {status}") from e
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to {self.provider} backend at {self._base_url}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"{self.provider} backend timed out after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise LLMError(f"{self.provider} request failed: {type(e).__name__}: {e}") from e
        return KeyCheck(valid=True)

    async def get_persona_reply(self, ctx: ReplyContext) -> PersonaReply:
        return await get_persona_reply(self, ctx, self._config)
