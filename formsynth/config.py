"""
Inference provider configuration.

Values come from a key/value store that operators may edit between calls, so
`load_provider_config` is meant to be called once per mapping request.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from dotenv import load_dotenv

PROVIDER_GROQ = "groq"
PROVIDER_OLLAMA = "ollama"

DEFAULT_GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_GROQ_MODEL = "llama-3.3-70b-versatile"
DEFAULT_OLLAMA_URL = "http://localhost:11434/api/generate"
DEFAULT_OLLAMA_MODEL = "llama3:8b"

CONFIG_KEYS = (
    "ai_provider",
    "groq_url",
    "groq_model",
    "groq_api_key",
    "ollama_url",
    "ollama_model",
)


class ConfigStore(Protocol):
    def get(self, key: str) -> str | None: ...


class DictConfigStore:
    """Wraps an in-memory mapping, e.g. rows of a configuration table."""

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values = dict(values or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)


class EnvConfigStore:
    """Reads `ai_provider` as `AI_PROVIDER` and so on, after loading `.env`."""

    def __init__(self, dotenv_path: str | None = None):
        load_dotenv(dotenv_path)

    def get(self, key: str) -> str | None:
        return os.environ.get(key.upper())


@dataclass(frozen=True)
class ProviderConfig:
    provider: str = PROVIDER_OLLAMA
    groq_url: str = DEFAULT_GROQ_URL
    groq_model: str = DEFAULT_GROQ_MODEL
    groq_api_key: str = ""
    ollama_url: str = DEFAULT_OLLAMA_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL


def load_provider_config(store: ConfigStore) -> ProviderConfig:
    """Snapshot the store; blank or missing values fall back to defaults."""
    values = {key: (store.get(key) or "").strip() for key in CONFIG_KEYS}
    provider = values["ai_provider"].lower() or PROVIDER_OLLAMA
    return ProviderConfig(
        provider=provider,
        groq_url=values["groq_url"] or DEFAULT_GROQ_URL,
        groq_model=values["groq_model"] or DEFAULT_GROQ_MODEL,
        groq_api_key=values["groq_api_key"],
        ollama_url=values["ollama_url"] or DEFAULT_OLLAMA_URL,
        ollama_model=values["ollama_model"] or DEFAULT_OLLAMA_MODEL,
    )
