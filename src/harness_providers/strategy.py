from __future__ import annotations

import abc
import math
import os
import time
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from .config import HarnessSettings, resolve_api_key
from .contracts import (
    AIRequest,
    AIResponse,
    ConnectionTestResult,
    ErrorInfo,
    HealthDetails,
    ProviderConfig,
    ProviderContext,
    ProviderHealth,
    ProviderInfo,
    ProviderStatistics,
    ResponseMetadata,
)
from .errors import HTTPError, ProviderError, ProviderTimeoutError
from .http_client import HTTPClient
from .metrics import provider_errors_total, request_latency_seconds, requests_total
from .scoring import StatisticsTracker, adjust_confidence, health_score, health_status

log = structlog.get_logger()

MAX_ATTEMPTS_PER_REQUEST = 3


@runtime_checkable
class ProviderStrategy(Protocol):
    """What callers may rely on, whichever provider sits behind it."""

    name: str
    version: str
    supported_service_types: list[str]

    async def initialize(self, config: ProviderConfig) -> None: ...

    async def cleanup(self) -> None: ...

    def can_handle(self, request: AIRequest) -> bool: ...

    async def send_request(self, request: AIRequest) -> AIResponse: ...

    async def calculate_confidence(self, request: AIRequest, context: ProviderContext) -> float: ...

    async def test_connection(self, config: ProviderConfig) -> ConnectionTestResult: ...

    async def get_health(self) -> ProviderHealth: ...

    def get_statistics(self) -> ProviderStatistics: ...

    def reset_statistics(self) -> None: ...


class RequestAttemptTracker:
    """Attempts per request id, capped at `max_entries` ids (least recently touched go first)."""

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max(1, max_entries)
        self._counts: OrderedDict[str, int] = OrderedDict()

    def __len__(self) -> int:
        return len(self._counts)

    def count(self, request_id: str) -> int:
        return self._counts.get(request_id, 0)

    def record(self, request_id: str) -> int:
        n = self._counts.pop(request_id, 0) + 1
        self._counts[request_id] = n
        while len(self._counts) > self.max_entries:
            self._counts.popitem(last=False)
        return n

    def clear(self) -> None:
        self._counts.clear()


def _numeric_param(parameters: Mapping[str, Any], key: str, default: float) -> float:
    value = parameters.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ProviderError(f"Invalid {key} parameter: {value!r}", key)
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ProviderError(f"Invalid {key} parameter: {value!r}", key, e) from e
    if not math.isfinite(number):
        raise ProviderError(f"Invalid {key} parameter: {value!r}", key)
    return number


def clamp_generation_params(
    parameters: Mapping[str, Any],
    *,
    temperature_range: tuple[float, float] = (0.0, 2.0),
    max_tokens_range: tuple[int, int] = (1, 4096),
    default_temperature: float = 0.7,
    default_max_tokens: int = 2000,
) -> tuple[float, int]:
    """Temperature and max-tokens forced into the protocol's valid ranges."""
    temperature = _numeric_param(parameters, "temperature", default_temperature)
    max_tokens = _numeric_param(parameters, "maxTokens", default_max_tokens)
    t_lo, t_hi = temperature_range
    m_lo, m_hi = max_tokens_range
    return min(max(temperature, t_lo), t_hi), int(min(max(int(max_tokens), m_lo), m_hi))


def apply_http_overrides(http: HTTPClient, config: ProviderConfig, settings: HarnessSettings) -> None:
    """Reset the client to `settings`, then let `config.timeout` (ms) and `config.retries` replace them."""
    http.timeout_ms = settings.http_timeout_ms
    http.retry = settings.retry_config()
    if config.timeout is not None:
        http.timeout_ms = config.timeout
    if config.retries is not None:
        http.retry = replace(
            http.retry,
            max_retries=config.retries.max_attempts - 1,
            delay_ms=config.retries.backoff_ms,
            max_delay_ms=max(http.retry.max_delay_ms, config.retries.backoff_ms),
        )


def token_count(usage: Mapping[str, Any], key: str) -> int:
    """`usage[key]` as an int; missing counts as 0, anything non-numeric is a malformed response."""
    value = usage.get(key) or 0
    if isinstance(value, bool):
        raise ProviderError(f"Invalid usage.{key} in response: {value!r}", "response")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ProviderError(f"Invalid usage.{key} in response: {value!r}", "response", e) from e


class AIProviderStrategy(abc.ABC):
    """
    Shared lifecycle and bookkeeping for concrete providers.

    Subclasses implement the `_do_*` hooks and `_base_confidence`; statistics,
    confidence adjustment and health scoring are delegated to `scoring`.
    """

    def __init__(
        self,
        name: str,
        version: str,
        supported_service_types: list[str],
        supported_failure_types: list[str],
        *,
        settings: HarnessSettings | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.name = name
        self.version = version
        self.supported_service_types = list(supported_service_types)
        self.supported_failure_types = list(supported_failure_types)
        self.settings = settings or HarnessSettings()
        self.is_initialized = False
        self._environ: Mapping[str, str] = os.environ if environ is None else environ
        self._api_key: str | None = None
        self._attempts = RequestAttemptTracker(self.settings.max_tracked_requests)
        self._stats = StatisticsTracker()
        log.info("provider_created", provider=name, version=version)

    def get_provider_name(self) -> str:
        return self.name

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(name=self.name, version=self.version, capabilities=list(self.supported_service_types))

    def can_handle(self, request: AIRequest) -> bool:
        return request.service_type in self.supported_service_types

    async def initialize(self, config: ProviderConfig) -> None:
        log.info("provider_initializing", provider=self.name)
        try:
            await self._do_initialize(config)
        except Exception:
            log.error("provider_initialize_failed", provider=self.name, exc_info=True)
            raise
        self.is_initialized = True
        log.info("provider_initialized", provider=self.name)

    async def cleanup(self) -> None:
        log.info("provider_cleaning_up", provider=self.name)
        await self._do_cleanup()
        self.is_initialized = False
        log.info("provider_cleaned_up", provider=self.name)

    async def send_request(self, request: AIRequest) -> AIResponse:
        log.info("provider_request_start", provider=self.name, request_id=request.id)
        started = time.monotonic()
        self._stats.touch()
        try:
            if not self.can_handle(request):
                raise ProviderError(
                    f"Provider {self.name} cannot handle service type: {request.service_type}",
                    "serviceType",
                )
            if not self.is_initialized:
                raise ProviderError(f"Provider {self.name} is not initialized (no API key).", "apiKey")
            if self._attempts.count(request.id) >= MAX_ATTEMPTS_PER_REQUEST:
                raise ProviderError(
                    f"Maximum request attempts exceeded for request: {request.id}",
                    "maxAttempts",
                )
            self._attempts.record(request.id)

            response = await self._do_send_request(request)
        except Exception as e:
            self._stats.record_failure()
            requests_total.labels(provider=self.name, status="error").inc()
            provider_errors_total.labels(provider=self.name, kind=type(e).__name__).inc()
            log.error(
                "provider_request_error",
                provider=self.name,
                request_id=request.id,
                error=str(e),
                field=getattr(e, "field", None),
            )
            raise

        duration_ms = (time.monotonic() - started) * 1000.0
        requests_total.labels(provider=self.name, status=response.status).inc()
        if response.status == "success":
            self._stats.record_success(duration_ms)
            request_latency_seconds.labels(provider=self.name).observe(duration_ms / 1000.0)
            log.info("provider_request_ok", provider=self.name, request_id=request.id)
        else:
            self._stats.record_failure()
            log.warning(
                "provider_request_failed", provider=self.name, request_id=request.id, status=response.status
            )
        return response

    async def calculate_confidence(self, request: AIRequest, context: ProviderContext) -> float:
        try:
            if not self.can_handle(request):
                return 0.0
            base = await self._base_confidence(request, context)
            return adjust_confidence(base, context, self._stats.success_rate)
        except Exception:
            log.error("provider_confidence_failed", provider=self.name, exc_info=True)
            return 0.0

    async def test_connection(self, config: ProviderConfig) -> ConnectionTestResult:
        log.info("provider_connection_test", provider=self.name)
        started = time.monotonic()
        try:
            result = await self._do_test_connection(config)
        except Exception as e:
            log.error("provider_connection_test_failed", provider=self.name, error=str(e))
            result = ConnectionTestResult(
                success=False,
                message=f"Connection test failed: {e}",
                error=ErrorInfo(code="CONNECTION_TEST_FAILED", message=str(e)),
            )
        return result.model_copy(
            update={
                "duration": (time.monotonic() - started) * 1000.0,
                "provider": self.provider_info(),
            }
        )

    async def get_health(self) -> ProviderHealth:
        try:
            stats = self.get_statistics()
            score = health_score(stats, initialized=self.is_initialized)
            status = health_status(score)
            return ProviderHealth(
                status=status,
                score=score,
                details=HealthDetails(
                    connection_status="connected" if self.is_initialized else "disconnected",
                    response_time=stats.average_response_time,
                    error_rate=1 - stats.success_rate,
                ),
                message=f"Provider {self.name} is {status}",
            )
        except Exception as e:
            log.error("provider_health_failed", provider=self.name, exc_info=True)
            return ProviderHealth(
                status="unhealthy",
                score=0.0,
                details=HealthDetails(connection_status="unknown", response_time=0.0, error_rate=1.0),
                message=f"Health check failed: {e}",
            )

    def get_statistics(self) -> ProviderStatistics:
        return self._stats.snapshot(
            name=self.name,
            version=self.version,
            supported_service_types=self.supported_service_types,
        )

    def reset_statistics(self) -> None:
        self._stats.reset()
        self._attempts.clear()
        log.info("provider_statistics_reset", provider=self.name)

    def _load_api_key(self, config: ProviderConfig, env_var: str, label: str) -> str:
        api_key = resolve_api_key(env_var, config.parameters, self._environ)
        if not api_key:
            raise ProviderError(
                f"{label} API key is required. Set {env_var} environment variable or provide apiKey in config.",
                "apiKey",
            )
        return api_key

    def _require_api_key(self) -> str:
        if not self._api_key:
            raise ProviderError(f"Provider {self.name} is not initialized (no API key).", "apiKey")
        return self._api_key

    @staticmethod
    def _model_for(request: AIRequest, default: str) -> str:
        model = request.parameters.get("model") or default
        if not isinstance(model, str):
            raise ProviderError("Invalid model parameter", "model")
        return model

    def _build_response(
        self,
        request: AIRequest,
        *,
        content: str,
        model: str,
        tokens_used: int | None,
        started: float,
        **extra: Any,
    ) -> AIResponse:
        return AIResponse(
            id=request.id,
            content=content,
            status="success",
            metadata=ResponseMetadata(
                model=model,
                provider=self.name,
                tokens_used=tokens_used,
                response_time=(time.monotonic() - started) * 1000.0,
                **extra,
            ),
        )

    def _transport_error(self, e: httpx.HTTPError, timeout_ms: float) -> ProviderError:
        if isinstance(e, httpx.TimeoutException):
            return ProviderTimeoutError(f"{self.name} request timed out after {timeout_ms:g}ms", timeout_ms, e)
        return ProviderError(f"{self.name} request failed: {e}", "request", e)

    def _probe_failure(self, e: Exception) -> ConnectionTestResult:
        log.warning("provider_probe_failed", provider=self.name, error=str(e))
        if isinstance(e, HTTPError) and e.status == 401:
            return ConnectionTestResult(
                success=False,
                message="Invalid API key",
                error=ErrorInfo(code="INVALID_API_KEY", message="The provided API key is invalid or expired"),
            )
        return ConnectionTestResult(
            success=False,
            message=f"Connection test failed: {e}",
            error=ErrorInfo(code="CONNECTION_FAILED", message=str(e)),
        )

    @abc.abstractmethod
    async def _do_initialize(self, config: ProviderConfig) -> None: ...

    @abc.abstractmethod
    async def _do_send_request(self, request: AIRequest) -> AIResponse: ...

    @abc.abstractmethod
    async def _do_test_connection(self, config: ProviderConfig) -> ConnectionTestResult: ...

    @abc.abstractmethod
    async def _base_confidence(self, request: AIRequest, context: ProviderContext) -> float: ...

    @abc.abstractmethod
    async def _do_cleanup(self) -> None: ...
