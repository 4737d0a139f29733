"""Engine configuration (providers, rate queues, sampling, engine limits).

Values come from three layers, later layers winning:
  1. _CONFIG_DEFAULTS below
  2. an optional JSON settings file (merged section by section)
  3. environment variables, with a .env file loaded through python-dotenv

Environment variables:
  PERSONA_ROOMS_PROVIDER  default provider name
  PERSONA_ROOMS_CONFIG    path of the JSON settings file
  GEMINI_API_KEY / OPENAI_API_KEY / ANTHROPIC_API_KEY
"""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

_CONFIG_DEFAULTS: dict[str, Any] = {
    "default_provider": "gemini",
    "providers": {
        "gemini": {
            "main_model": "gemini-2.5-flash",
            "lite_model": "gemini-2.5-flash-lite",
            "base_url": "https://generativelanguage.googleapis.com",
            "api_key": "",
        },
        "openai": {
            "main_model": "gpt-4o",
            "lite_model": "gpt-4o-mini",
            "base_url": "https://api.openai.com",
            "api_key": "",
        },
        "claude": {
            "main_model": "claude-sonnet-4-20250514",
            "lite_model": "claude-3-5-haiku-20241022",
            "base_url": "https://api.anthropic.com",
            "api_key": "",
        },
    },
    # "provider:tier" → requests-per-minute budget + random jitter
    "queues": {
        "gemini:main": {"rpm": 5, "jitter_ms": 1500},
        "gemini:lite": {"rpm": 10, "jitter_ms": 1000},
        "claude:main": {"rpm": 50, "jitter_ms": 300},
        "claude:lite": {"rpm": 50, "jitter_ms": 200},
        "openai:main": {"rpm": 60, "jitter_ms": 300},
        "openai:lite": {"rpm": 60, "jitter_ms": 200},
    },
    "sampling": {
        "temperature": 0.95,
        "top_p": 0.95,
        "top_k": 40,
        "max_output_tokens": 2048,
    },
    "engine": {
        "max_rounds": 10,
        "history_window": 20,
        "short_history_window": 5,
        "adult_age": 18,
        "memory_capacity": 6,
        "broadcast_label": "大家",
        "affection_mode": "absolute",  # "absolute" | "delta"
    },
    "timeout": 120.0,
}

_SECTIONS = ("providers", "queues", "sampling", "engine")

_API_KEY_ENV = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
}

# Fallback for queues not listed in the config
DEFAULT_QUEUE_SETTINGS: dict[str, Any] = {"rpm": 10, "jitter_ms": 1000}


def _config_path(path: Path | None) -> Path | None:
    if path is not None:
        return path
    env_path = os.getenv("PERSONA_ROOMS_CONFIG", "")
    return Path(env_path) if env_path else None


def get_config(path: Path | None = None) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and env overrides."""
    load_dotenv()
    config = copy.deepcopy(_CONFIG_DEFAULTS)

    resolved = _config_path(path)
    if resolved is not None and resolved.is_file():
        stored = json.loads(resolved.read_text())
        _merge(config, stored)

    provider = os.getenv("PERSONA_ROOMS_PROVIDER", "")
    if provider:
        config["default_provider"] = provider
    for name, env_var in _API_KEY_ENV.items():
        key = os.getenv(env_var, "")
        if key and name in config["providers"]:
            config["providers"][name]["api_key"] = key
    return config


def update_config(path: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into the stored settings file and persist. Returns full config."""
    stored: dict[str, Any] = {}
    if path.is_file():
        stored = json.loads(path.read_text())
    _merge(stored, fields, allow_new=True)
    path.write_text(json.dumps(stored, indent=2, ensure_ascii=False))
    return get_config(path)


def _merge(config: dict[str, Any], stored: dict[str, Any], allow_new: bool = False) -> None:
    if "default_provider" in stored:
        config["default_provider"] = stored["default_provider"]
    if "timeout" in stored:
        config["timeout"] = float(stored["timeout"])
    for section in _SECTIONS:
        values = stored.get(section)
        if not isinstance(values, dict):
            continue
        target = config.setdefault(section, {})
        for key, val in values.items():
            if isinstance(val, dict) and isinstance(target.get(key), dict):
                target[key].update(val)
            elif key in target or allow_new or section in ("providers", "queues"):
                target[key] = val


# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------

def engine_setting(config: dict[str, Any], key: str) -> Any:
    """Look up an engine limit, falling back to the built-in default."""
    return config.get("engine", {}).get(key, _CONFIG_DEFAULTS["engine"][key])


def sampling_settings(config: dict[str, Any]) -> dict[str, Any]:
    merged = dict(_CONFIG_DEFAULTS["sampling"])
    merged.update(config.get("sampling", {}))
    return merged


def queue_settings(config: dict[str, Any], provider: str, tier: str) -> dict[str, Any]:
    settings = dict(DEFAULT_QUEUE_SETTINGS)
    settings.update(config.get("queues", {}).get(f"{provider}:{tier}", {}))
    return settings


def model_name(config: dict[str, Any], provider: str, tier: str) -> str:
    provider_conf = config.get("providers", {}).get(provider, {})
    return provider_conf.get("lite_model" if tier == "lite" else "main_model", "")
