from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class ProviderError(Exception):
    """Base error for provider failures.

    `field` names the config/request element that caused the failure,
    `cause` keeps the underlying error (also chained via ``raise ... from``).
    """

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, field: str | None = None, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.cause = cause


class RateLimitError(ProviderError):
    code = "RATE_LIMITED"

    def __init__(self, message: str = "Rate limited", retry_after: int | None = None, cause: BaseException | None = None):
        super().__init__(message, "rateLimit", cause)
        self.retry_after = retry_after


class QuotaExceededError(ProviderError):
    """Billing/subscription ceiling reached; retrying immediately will not help."""

    code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        message: str = "Quota exceeded",
        quota_limit: int | None = None,
        quota_used: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, "quota", cause)
        self.quota_limit = quota_limit
        self.quota_used = quota_used


class ProviderTimeoutError(ProviderError):
    code = "TIMEOUT"

    def __init__(self, message: str = "Request timed out", timeout_ms: float | None = None, cause: BaseException | None = None):
        super().__init__(message, "timeout", cause)
        self.timeout_ms = timeout_ms


class HTTPError(Exception):
    """Non-2xx response surfaced by the retrying HTTP client."""

    def __init__(
        self,
        message: str,
        status: int,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body if body is not None else {}
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}

    def error_payload(self) -> dict[str, Any]:
        """The `error` object most LLM APIs put in their error bodies."""
        if isinstance(self.body, dict):
            err = self.body.get("error")
            if isinstance(err, dict):
                return err
        return {}
