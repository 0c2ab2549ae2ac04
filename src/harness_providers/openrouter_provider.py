from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import httpx
import structlog

from .config import HarnessSettings
from .contracts import AIRequest, AIResponse, ConnectionTestResult, ProviderConfig, ProviderContext
from .errors import HTTPError, ProviderError, RateLimitError
from .http_client import HTTPClient, parse_retry_after
from .openai_provider import chat_messages, first_choice_content, total_tokens
from .strategy import AIProviderStrategy, apply_http_overrides, clamp_generation_params

log = structlog.get_logger()

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
OPENROUTER_API_KEY_ENV = "OPENROUTER_API_KEY"


class OpenRouterProvider(AIProviderStrategy):
    """OpenAI-compatible gateway to many upstream models; adds billing and model-availability errors."""

    def __init__(
        self,
        *,
        settings: HarnessSettings | None = None,
        client: httpx.AsyncClient | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        super().__init__(
            "openrouter",
            "1.0.0",
            ["chat-completion", "text-generation"],
            ["rate-limit", "model-unavailable", "billing-error", "authentication", "invalid-request"],
            settings=settings,
            environ=environ,
        )
        self._http = HTTPClient(
            self.settings.retry_config(),
            self.settings.http_timeout_ms,
            client=client,
            sleeper=sleeper,
        )
        self.base_url = OPENROUTER_API_BASE
        self.default_model = "openai/gpt-4o-mini"
        self.referer = "https://test-automation-harness.com"
        self.title = "Self-Healing Test Automation Harness"

    def _headers(self, api_key: str, *, attribution: bool = True) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        if attribution:
            # optional app attribution headers
            headers["HTTP-Referer"] = self.referer
            headers["X-Title"] = self.title
        return headers

    async def _do_initialize(self, config: ProviderConfig) -> None:
        self._api_key = self._load_api_key(config, OPENROUTER_API_KEY_ENV, "OpenRouter")
        params = config.parameters
        if params.get("model"):
            self.default_model = str(params["model"])
        if params.get("baseUrl"):
            self.base_url = str(params["baseUrl"]).rstrip("/")
        if params.get("referer"):
            self.referer = str(params["referer"])
        if params.get("title"):
            self.title = str(params["title"])
        apply_http_overrides(self._http, config, self.settings)
        log.info("openrouter_provider_ready", model=self.default_model, base_url=self.base_url)

    async def _do_send_request(self, request: AIRequest) -> AIResponse:
        api_key = self._require_api_key()
        started = time.monotonic()
        model = self._model_for(request, self.default_model)
        temperature, max_tokens = clamp_generation_params(request.parameters)
        body = {
            "model": model,
            "messages": chat_messages(request),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        log.debug(
            "openrouter_request",
            request_id=request.id,
            model=model,
            prompt_chars=len(request.prompt),
            temperature=temperature,
            max_tokens=max_tokens,
        )

        try:
            data = await self._http.request(
                f"{self.base_url}/chat/completions", method="POST", headers=self._headers(api_key), json=body
            )
        except HTTPError as e:
            raise self._map_error(e, request, model) from e
        except httpx.HTTPError as e:
            raise self._transport_error(e, self._http.timeout_ms) from e
        except ValueError as e:
            raise ProviderError(f"OpenRouter returned a non-JSON body: {e}", "response", e) from e

        # upstream failures can arrive as 2xx bodies carrying an error object
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            message = data["error"].get("message") or "unknown error"
            raise ProviderError(f"OpenRouter API error: {message}", "api")

        content, finish_reason = first_choice_content(data)
        tokens = total_tokens(data)
        log.info(
            "openrouter_request_ok",
            request_id=request.id,
            model=model,
            tokens_used=tokens,
            content_chars=len(content),
        )
        return self._build_response(
            request,
            content=content,
            model=model,
            tokens_used=tokens,
            started=started,
            finish_reason=finish_reason,
        )

    def _map_error(self, e: HTTPError, request: AIRequest, model: str) -> ProviderError:
        message = e.error_payload().get("message") or str(e)
        log.error("openrouter_api_error", request_id=request.id, model=model, status=e.status, error_message=message)

        if e.status == 429:
            return RateLimitError("OpenRouter rate limit exceeded", parse_retry_after(e.headers), e)
        if e.status == 400:
            return ProviderError(f"OpenRouter request error: {message}", "request", e)
        if e.status == 401:
            return ProviderError("OpenRouter authentication failed. Check your API key.", "authentication", e)
        if e.status == 402:
            return ProviderError("OpenRouter billing error. Check your account credits.", "billing", e)
        if e.status == 404:
            return ProviderError("OpenRouter model not found. Check model availability.", "model", e)
        return ProviderError(f"OpenRouter API error ({e.status}): {message}", "api", e)

    async def _do_test_connection(self, config: ProviderConfig) -> ConnectionTestResult:
        api_key = self._api_key or self._load_api_key(config, OPENROUTER_API_KEY_ENV, "OpenRouter")
        probe: dict[str, Any] = {
            "model": self.default_model,
            "messages": [{"role": "user", "content": "Hello"}],
            "max_tokens": 1,
        }
        try:
            await self._http.request(
                f"{self.base_url}/chat/completions",
                method="POST",
                headers=self._headers(api_key, attribution=False),
                json=probe,
            )
        except (HTTPError, httpx.HTTPError) as e:
            return self._probe_failure(e)
        return ConnectionTestResult(success=True, message="OpenRouter connection test successful")

    async def _base_confidence(self, request: AIRequest, context: ProviderContext) -> float:
        # load and success-rate adjustments are applied once, by the base class
        return 0.8

    async def _do_cleanup(self) -> None:
        self._api_key = None
        await self._http.aclose()
