from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    delay_ms: float = 1000.0
    backoff_multiplier: float = 2.0
    max_delay_ms: float = 10000.0

    @property
    def max_attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def delay_before_attempt(self, attempt: int) -> float:
        """Backoff (ms) slept before 1-based `attempt`; the first attempt never waits."""
        if attempt < 2:
            return 0.0
        return min(self.delay_ms * self.backoff_multiplier ** (attempt - 2), self.max_delay_ms)


class HarnessSettings(BaseModel):
    # Observability
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))

    # HTTP behavior
    http_timeout_ms: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_HTTP_TIMEOUT_MS", "30000")), gt=0
    )
    http_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("PROVIDER_HTTP_MAX_RETRIES", "3")), ge=0
    )
    http_backoff_delay_ms: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_HTTP_BACKOFF_DELAY_MS", "1000")), ge=0
    )
    http_backoff_multiplier: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_HTTP_BACKOFF_MULTIPLIER", "2")), ge=1
    )
    http_backoff_max_delay_ms: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_HTTP_BACKOFF_MAX_DELAY_MS", "10000")), ge=0
    )

    # Upper bound on request ids remembered for the per-request attempt limit
    max_tracked_requests: int = Field(
        default_factory=lambda: int(os.getenv("PROVIDER_MAX_TRACKED_REQUESTS", "10000")), ge=1
    )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.http_max_retries,
            delay_ms=self.http_backoff_delay_ms,
            backoff_multiplier=self.http_backoff_multiplier,
            max_delay_ms=self.http_backoff_max_delay_ms,
        )


def resolve_api_key(env_var: str, parameters: Mapping[str, Any], environ: Mapping[str, str]) -> str | None:
    """Environment wins over config; empty values count as missing."""
    from_env = environ.get(env_var)
    if from_env:
        return from_env
    from_config = parameters.get("apiKey")
    if isinstance(from_config, str) and from_config:
        return from_config
    return None
