from __future__ import annotations

from typing import Any

from .claude_provider import ClaudeProvider
from .errors import ProviderError
from .openai_provider import OpenAIProvider
from .openrouter_provider import OpenRouterProvider
from .strategy import AIProviderStrategy

PROVIDERS: dict[str, type[AIProviderStrategy]] = {
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
    "openrouter": OpenRouterProvider,
}

# accepted spellings for the same provider
_ALIASES = {"anthropic": "claude"}


def available_providers() -> list[str]:
    return sorted(PROVIDERS)


def create_provider(name: str, **kwargs: Any) -> AIProviderStrategy:
    key = name.strip().lower()
    key = _ALIASES.get(key, key)
    try:
        cls = PROVIDERS[key]
    except KeyError as e:
        raise ProviderError(
            f"Unknown provider {name!r}; expected one of: {', '.join(available_providers())}",
            "name",
        ) from e
    return cls(**kwargs)
