from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import httpx
import structlog

from .config import HarnessSettings
from .contracts import AIRequest, AIResponse, ConnectionTestResult, ProviderConfig, ProviderContext
from .errors import HTTPError, ProviderError, QuotaExceededError, RateLimitError
from .http_client import HTTPClient, parse_retry_after
from .strategy import AIProviderStrategy, apply_http_overrides, clamp_generation_params, token_count

log = structlog.get_logger()

OPENAI_API_BASE = "https://api.openai.com/v1"
OPENAI_API_KEY_ENV = "OPENAI_API_KEY"


def chat_messages(request: AIRequest) -> list[dict[str, str]]:
    """Chat-completions message list: optional `system` parameter, then the prompt."""
    messages: list[dict[str, str]] = []
    system = request.parameters.get("system")
    if isinstance(system, str) and system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": request.prompt})
    return messages


def first_choice_content(data: Any) -> tuple[str, str | None]:
    """(`choices[0].message.content`, finish_reason); empty content when absent."""
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return "", None
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    return (content if isinstance(content, str) else ""), choices[0].get("finish_reason")


def total_tokens(data: Any) -> int:
    usage = data.get("usage") if isinstance(data, dict) else None
    if not isinstance(usage, dict):
        return 0
    return token_count(usage, "total_tokens")


class OpenAIProvider(AIProviderStrategy):
    """OpenAI Chat Completions (and Embeddings) over `Authorization: Bearer`."""

    def __init__(
        self,
        *,
        settings: HarnessSettings | None = None,
        client: httpx.AsyncClient | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        super().__init__(
            "openai",
            "1.0.0",
            ["chat-completion", "text-generation", "embeddings"],
            ["rate-limit", "quota-exceeded", "invalid-request"],
            settings=settings,
            environ=environ,
        )
        self._http = HTTPClient(
            self.settings.retry_config(),
            self.settings.http_timeout_ms,
            client=client,
            sleeper=sleeper,
        )
        self.base_url = OPENAI_API_BASE
        self.default_model = "gpt-4"
        self.default_embedding_model = "text-embedding-3-small"

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}

    async def _do_initialize(self, config: ProviderConfig) -> None:
        self._api_key = self._load_api_key(config, OPENAI_API_KEY_ENV, "OpenAI")
        params = config.parameters
        if params.get("model"):
            self.default_model = str(params["model"])
        if params.get("embeddingModel"):
            self.default_embedding_model = str(params["embeddingModel"])
        if params.get("baseUrl"):
            self.base_url = str(params["baseUrl"]).rstrip("/")
        apply_http_overrides(self._http, config, self.settings)
        log.info("openai_provider_ready", model=self.default_model, base_url=self.base_url)

    async def _post(self, path: str, api_key: str, body: dict[str, Any], request: AIRequest) -> Any:
        try:
            return await self._http.request(
                f"{self.base_url}{path}", method="POST", headers=self._headers(api_key), json=body
            )
        except HTTPError as e:
            raise self._map_error(e, request) from e
        except httpx.HTTPError as e:
            raise self._transport_error(e, self._http.timeout_ms) from e
        except ValueError as e:
            raise ProviderError(f"OpenAI returned a non-JSON body: {e}", "response", e) from e

    async def _do_send_request(self, request: AIRequest) -> AIResponse:
        api_key = self._require_api_key()
        started = time.monotonic()
        if request.service_type == "embeddings":
            return await self._send_embeddings(request, api_key, started)

        model = self._model_for(request, self.default_model)
        temperature, max_tokens = clamp_generation_params(request.parameters)
        body = {
            "model": model,
            "messages": chat_messages(request),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        log.debug("openai_request", request_id=request.id, model=model, max_tokens=max_tokens)

        data = await self._post("/chat/completions", api_key, body, request)
        content, finish_reason = first_choice_content(data)
        tokens = total_tokens(data)
        log.info("openai_request_ok", request_id=request.id, model=model, tokens_used=tokens)
        return self._build_response(
            request,
            content=content,
            model=model,
            tokens_used=tokens,
            started=started,
            finish_reason=finish_reason,
        )

    async def _send_embeddings(self, request: AIRequest, api_key: str, started: float) -> AIResponse:
        model = self._model_for(request, self.default_embedding_model)
        data = await self._post("/embeddings", api_key, {"model": model, "input": request.prompt}, request)
        items = data.get("data") if isinstance(data, dict) else None
        embedding: list[float] = []
        if isinstance(items, list) and items and isinstance(items[0], dict):
            embedding = list(items[0].get("embedding") or [])
        return self._build_response(
            request,
            content="",
            model=model,
            tokens_used=total_tokens(data),
            started=started,
            embedding=embedding,
        )

    def _map_error(self, e: HTTPError, request: AIRequest) -> ProviderError:
        err = e.error_payload()
        message = err.get("message") or str(e)
        error_type = err.get("type") or "unknown_error"
        error_code = err.get("code") or "unknown"
        log.error(
            "openai_api_error",
            request_id=request.id,
            status=e.status,
            error_type=error_type,
            error_code=error_code,
            error_message=message,
        )

        if e.status == 429:
            if error_type == "insufficient_quota" or error_code == "insufficient_quota":
                return QuotaExceededError(message, cause=e)
            return RateLimitError(message, parse_retry_after(e.headers), e)
        if e.status == 401:
            return ProviderError(f"Invalid API key: {message}", "apiKey", e)
        return ProviderError(f"OpenAI API error ({e.status}): {message}", error_type, e)

    async def _do_test_connection(self, config: ProviderConfig) -> ConnectionTestResult:
        # /models needs valid auth but costs no tokens
        api_key = self._api_key or self._load_api_key(config, OPENAI_API_KEY_ENV, "OpenAI")
        try:
            data = await self._http.request(
                f"{self.base_url}/models", headers={"Authorization": f"Bearer {api_key}"}
            )
        except (HTTPError, httpx.HTTPError) as e:
            return self._probe_failure(e)
        models = data.get("data") if isinstance(data, dict) else None
        log.info("openai_probe_ok", models_count=len(models) if isinstance(models, list) else 0)
        return ConnectionTestResult(success=True, message="Successfully connected to OpenAI API")

    async def _base_confidence(self, request: AIRequest, context: ProviderContext) -> float:
        return 0.8

    async def _do_cleanup(self) -> None:
        self._api_key = None
        await self._http.aclose()
