from .claude_provider import ClaudeProvider
from .config import HarnessSettings, RetryConfig
from .contracts import (
    AIRequest,
    AIResponse,
    ConnectionTestResult,
    ProviderConfig,
    ProviderContext,
    ProviderHealth,
    ProviderStatistics,
)
from .errors import HTTPError, ProviderError, ProviderTimeoutError, QuotaExceededError, RateLimitError
from .http_client import HTTPClient
from .openai_provider import OpenAIProvider
from .openrouter_provider import OpenRouterProvider
from .registry import available_providers, create_provider
from .strategy import AIProviderStrategy, ProviderStrategy

__all__ = [
    "AIProviderStrategy",
    "AIRequest",
    "AIResponse",
    "ClaudeProvider",
    "ConnectionTestResult",
    "HTTPClient",
    "HTTPError",
    "HarnessSettings",
    "OpenAIProvider",
    "OpenRouterProvider",
    "ProviderConfig",
    "ProviderContext",
    "ProviderError",
    "ProviderHealth",
    "ProviderStatistics",
    "ProviderStrategy",
    "ProviderTimeoutError",
    "QuotaExceededError",
    "RateLimitError",
    "RetryConfig",
    "available_providers",
    "create_provider",
]
