from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Collection, Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog

from .config import RetryConfig
from .errors import HTTPError
from .metrics import http_client_retries_total

log = structlog.get_logger()


def parse_retry_after(headers: Mapping[str, str] | None) -> int | None:
    """Seconds from a `retry-after` header (delta-seconds or HTTP-date)."""
    if not headers:
        return None
    raw = headers.get("retry-after")
    if raw is None:
        return None
    raw = raw.strip()
    if raw.isdigit():
        return int(raw)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, HTTPError):
        return 500 <= error.status < 600
    return isinstance(error, httpx.TransportError)


class HTTPClient:
    """
    JSON-over-HTTP client with exponential backoff.

    Every attempt is bounded by `timeout_ms`; a timeout counts as a network
    failure. Network failures and 5xx responses are retried, 4xx responses and
    anything listed in `fail_fast_statuses` are raised on first sight. Once the
    budget is spent the last error is re-raised unchanged so callers can still
    inspect status, body and headers.
    """

    def __init__(
        self,
        retry: RetryConfig | None = None,
        timeout_ms: float = 30000,
        *,
        client: httpx.AsyncClient | None = None,
        fail_fast_statuses: Collection[int] = (),
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.retry = retry or RetryConfig()
        self.timeout_ms = timeout_ms
        self.fail_fast_statuses = frozenset(fail_fast_statuses)
        self._client = client
        self._owns_client = client is None
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _should_retry(self, error: BaseException) -> bool:
        if isinstance(error, HTTPError) and error.status in self.fail_fast_statuses:
            return False
        return is_retryable(error)

    async def _attempt(
        self, url: str, method: str, headers: Mapping[str, str] | None, json: Any
    ) -> Any:
        resp = await self._get_client().request(
            method,
            url,
            headers=headers,
            json=json,
            timeout=self.timeout_ms / 1000.0,
        )
        if resp.is_success:
            return resp.json()

        try:
            body = resp.json()
        except ValueError:
            body = {}
        raise HTTPError(
            f"HTTP {resp.status_code}: {resp.reason_phrase}",
            resp.status_code,
            body,
            resp.headers,
        )

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> Any:
        max_attempts = self.retry.max_attempts
        last_error: Exception | None = None
        log.debug("http_request_start", url=url, method=method, max_attempts=max_attempts)

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay_ms = self.retry.delay_before_attempt(attempt)
                log.debug("http_retry_wait", url=url, attempt=attempt, delay_ms=delay_ms)
                await self._sleep(delay_ms / 1000.0)

            try:
                data = await self._attempt(url, method, headers, json)
            except (HTTPError, httpx.TransportError) as e:
                last_error = e
                status = e.status if isinstance(e, HTTPError) else None
                will_retry = attempt < max_attempts and self._should_retry(e)
                log.warning(
                    "http_attempt_failed",
                    url=url,
                    attempt=attempt,
                    status=status,
                    error=str(e) or type(e).__name__,
                    will_retry=will_retry,
                )
                if not self._should_retry(e):
                    raise
                if will_retry:
                    reason = "timeout" if isinstance(e, httpx.TimeoutException) else (
                        "server_error" if status is not None else "network"
                    )
                    http_client_retries_total.labels(reason=reason).inc()
                continue

            log.debug("http_request_ok", url=url, attempt=attempt)
            return data

        log.error(
            "http_retries_exhausted",
            url=url,
            max_retries=self.retry.max_retries,
            last_error=str(last_error) if last_error else None,
        )
        if last_error is None:  # pragma: no cover
            raise RuntimeError("Request failed after retries.")
        raise last_error
