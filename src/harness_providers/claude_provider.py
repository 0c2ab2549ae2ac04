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
from .strategy import AIProviderStrategy, apply_http_overrides, clamp_generation_params, token_count

log = structlog.get_logger()

ANTHROPIC_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_API_KEY_ENV = "ANTHROPIC_API_KEY"
ANTHROPIC_VERSION = "2023-06-01"

# Anthropic's "overloaded" status; surfaced as a rate limit, never retried as a plain 5xx
OVERLOADED_STATUS = 529


class ClaudeProvider(AIProviderStrategy):
    """
    Anthropic Messages API.

    Differs from the chat-completions protocols in auth (`x-api-key` plus
    `anthropic-version`), the mandatory `max_tokens`, the separate `system`
    field, the response shape (`content[0].text`) and split token usage.
    """

    def __init__(
        self,
        *,
        settings: HarnessSettings | None = None,
        client: httpx.AsyncClient | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        super().__init__(
            "claude",
            "1.0.0",
            ["chat-completion", "text-generation"],
            ["rate-limit", "overloaded", "authentication", "permission"],
            settings=settings,
            environ=environ,
        )
        self._http = HTTPClient(
            self.settings.retry_config(),
            self.settings.http_timeout_ms,
            client=client,
            fail_fast_statuses={OVERLOADED_STATUS},
            sleeper=sleeper,
        )
        self.base_url = ANTHROPIC_API_BASE
        self.default_model = "claude-3-sonnet-20240229"
        self.anthropic_version = ANTHROPIC_VERSION

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": self.anthropic_version,
        }

    async def _do_initialize(self, config: ProviderConfig) -> None:
        self._api_key = self._load_api_key(config, ANTHROPIC_API_KEY_ENV, "Claude")
        params = config.parameters
        if params.get("model"):
            self.default_model = str(params["model"])
        if params.get("anthropicVersion"):
            self.anthropic_version = str(params["anthropicVersion"])
        if params.get("baseUrl"):
            self.base_url = str(params["baseUrl"]).rstrip("/")
        apply_http_overrides(self._http, config, self.settings)
        log.info("claude_provider_ready", model=self.default_model, anthropic_version=self.anthropic_version)

    async def _do_send_request(self, request: AIRequest) -> AIResponse:
        api_key = self._require_api_key()
        started = time.monotonic()
        model = self._model_for(request, self.default_model)
        temperature, max_tokens = clamp_generation_params(request.parameters, temperature_range=(0.0, 1.0))

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
            "temperature": temperature,
        }
        system = request.parameters.get("system")
        if isinstance(system, str) and system:
            body["system"] = system
        log.debug("claude_request", request_id=request.id, model=model, max_tokens=max_tokens)

        try:
            data = await self._http.request(
                f"{self.base_url}/messages", method="POST", headers=self._headers(api_key), json=body
            )
        except HTTPError as e:
            raise self._map_error(e, request) from e
        except httpx.HTTPError as e:
            raise self._transport_error(e, self._http.timeout_ms) from e
        except ValueError as e:
            raise ProviderError(f"Claude returned a non-JSON body: {e}", "response", e) from e

        content = ""
        blocks = data.get("content") if isinstance(data, dict) else None
        if isinstance(blocks, list) and blocks and isinstance(blocks[0], dict):
            text = blocks[0].get("text")
            content = text if isinstance(text, str) else ""
        usage = data.get("usage") if isinstance(data, dict) else None
        usage = usage if isinstance(usage, dict) else {}
        tokens = token_count(usage, "input_tokens") + token_count(usage, "output_tokens")

        log.info("claude_request_ok", request_id=request.id, model=model, tokens_used=tokens)
        return self._build_response(
            request,
            content=content,
            model=model,
            tokens_used=tokens,
            started=started,
            stop_reason=data.get("stop_reason") if isinstance(data, dict) else None,
        )

    def _map_error(self, e: HTTPError, request: AIRequest) -> ProviderError:
        err = e.error_payload()
        message = err.get("message") or str(e)
        error_type = err.get("type") or "unknown_error"
        log.error(
            "claude_api_error",
            request_id=request.id,
            status=e.status,
            error_type=error_type,
            error_message=message,
        )

        if e.status == 429:
            return RateLimitError(message, parse_retry_after(e.headers), e)
        if e.status == OVERLOADED_STATUS:
            return RateLimitError(f"Claude service is overloaded: {message}", parse_retry_after(e.headers), e)
        if e.status == 401:
            return ProviderError(f"Invalid API key: {message}", "apiKey", e)
        if e.status == 403:
            return ProviderError(f"Permission denied: {message}", "permission", e)
        return ProviderError(f"Claude API error ({e.status}): {message}", error_type, e)

    async def _do_test_connection(self, config: ProviderConfig) -> ConnectionTestResult:
        # no /models endpoint; a 1-token message is the cheapest authenticated call
        api_key = self._api_key or self._load_api_key(config, ANTHROPIC_API_KEY_ENV, "Claude")
        try:
            data = await self._http.request(
                f"{self.base_url}/messages",
                method="POST",
                headers=self._headers(api_key),
                json={
                    "model": self.default_model,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "Hello"}],
                },
            )
        except (HTTPError, httpx.HTTPError) as e:
            return self._probe_failure(e)
        log.info("claude_probe_ok", model=data.get("model") if isinstance(data, dict) else None)
        return ConnectionTestResult(success=True, message="Successfully connected to Claude API")

    async def _base_confidence(self, request: AIRequest, context: ProviderContext) -> float:
        return 0.8

    async def _do_cleanup(self) -> None:
        self._api_key = None
        await self._http.aclose()
