import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from support import Recorder, make_client
from harness_providers.config import RetryConfig
from harness_providers.errors import HTTPError
from harness_providers.http_client import HTTPClient, is_retryable, parse_retry_after


def test_backoff_delays_are_exponential_and_capped():
    cfg = RetryConfig(max_retries=3, delay_ms=1000, backoff_multiplier=2, max_delay_ms=10000)
    assert [cfg.delay_before_attempt(k) for k in (2, 3, 4)] == [1000, 2000, 4000]
    assert cfg.delay_before_attempt(1) == 0
    assert cfg.max_attempts == 4

    capped = RetryConfig(max_retries=6, delay_ms=1000, backoff_multiplier=2, max_delay_ms=10000)
    assert capped.delay_before_attempt(6) == 10000
    assert capped.delay_before_attempt(7) == 10000


@pytest.mark.asyncio
async def test_request_posts_json_and_returns_parsed_body(no_sleep):
    rec = Recorder(httpx.Response(200, json={"ok": True}))
    async with make_client(rec) as client:
        http = HTTPClient(client=client, sleeper=no_sleep)
        out = await http.request(
            "https://api.test/v1/things", method="POST", headers={"x-api-key": "k"}, json={"a": 1}
        )
    assert out == {"ok": True}
    sent = rec.requests[0]
    assert sent.method == "POST"
    assert sent.headers["x-api-key"] == "k"
    assert json.loads(sent.content) == {"a": 1}


@pytest.mark.asyncio
async def test_retries_5xx_with_backoff_then_succeeds(no_sleep, sleeps):
    rec = Recorder(
        httpx.Response(503, text="overloaded"),
        httpx.Response(502, json={"error": {"message": "bad gateway"}}),
        httpx.Response(200, json={"ok": 1}),
    )
    async with make_client(rec) as client:
        http = HTTPClient(RetryConfig(max_retries=3, delay_ms=1000), client=client, sleeper=no_sleep)
        assert await http.request("https://api.test/x") == {"ok": 1}
    assert rec.calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_4xx_fails_immediately_without_retry(no_sleep, sleeps):
    rec = Recorder(httpx.Response(404, json={"error": {"message": "nope"}}))
    async with make_client(rec) as client:
        http = HTTPClient(client=client, sleeper=no_sleep)
        with pytest.raises(HTTPError) as exc:
            await http.request("https://api.test/x")
    assert exc.value.status == 404
    assert exc.value.body == {"error": {"message": "nope"}}
    assert exc.value.error_payload()["message"] == "nope"
    assert rec.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_exhausted_retries_reraise_last_http_error(no_sleep):
    rec = Recorder(httpx.Response(500, text="boom"))
    async with make_client(rec) as client:
        http = HTTPClient(RetryConfig(max_retries=2), client=client, sleeper=no_sleep)
        with pytest.raises(HTTPError) as exc:
            await http.request("https://api.test/x")
    assert exc.value.status == 500
    # non-JSON error bodies degrade to an empty mapping
    assert exc.value.body == {}
    assert rec.calls == 3


@pytest.mark.asyncio
async def test_timeouts_are_retried_as_network_failures(no_sleep, sleeps):
    rec = Recorder(httpx.ReadTimeout("slow"), httpx.Response(200, json={"ok": True}))
    async with make_client(rec) as client:
        http = HTTPClient(RetryConfig(max_retries=1, delay_ms=250), timeout_ms=5, client=client, sleeper=no_sleep)
        assert await http.request("https://api.test/x") == {"ok": True}
    assert rec.calls == 2
    assert sleeps == [0.25]


@pytest.mark.asyncio
async def test_network_failure_surfaces_transport_error_after_budget(no_sleep):
    rec = Recorder(httpx.ConnectError("refused"))
    async with make_client(rec) as client:
        http = HTTPClient(RetryConfig(max_retries=3), client=client, sleeper=no_sleep)
        with pytest.raises(httpx.ConnectError):
            await http.request("https://api.test/x")
    assert rec.calls == 4


@pytest.mark.asyncio
async def test_fail_fast_statuses_skip_the_5xx_retry(no_sleep):
    rec = Recorder(httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error"}}))
    async with make_client(rec) as client:
        http = HTTPClient(client=client, fail_fast_statuses={529}, sleeper=no_sleep)
        with pytest.raises(HTTPError) as exc:
            await http.request("https://api.test/x")
    assert exc.value.status == 529
    assert rec.calls == 1


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    rec = Recorder(httpx.Response(200, json={}))
    client = make_client(rec)
    http = HTTPClient(client=client)
    await http.aclose()
    assert not client.is_closed
    await client.aclose()


def test_is_retryable_classification():
    assert is_retryable(HTTPError("x", 500))
    assert is_retryable(HTTPError("x", 599))
    assert is_retryable(httpx.ConnectError("x"))
    assert not is_retryable(HTTPError("x", 429))
    assert not is_retryable(HTTPError("x", 600))
    assert not is_retryable(ValueError("x"))


def test_parse_retry_after_variants():
    assert parse_retry_after({"retry-after": "60"}) == 60
    assert parse_retry_after({"retry-after": "soon"}) is None
    assert parse_retry_after({}) is None
    assert parse_retry_after(None) is None

    later = datetime.now(timezone.utc) + timedelta(seconds=120)
    parsed = parse_retry_after({"retry-after": format_datetime(later, usegmt=True)})
    assert parsed is not None and 100 <= parsed <= 120


def test_http_error_headers_are_case_insensitive_by_lowercasing():
    err = HTTPError("HTTP 429", 429, headers={"Retry-After": "7"})
    assert parse_retry_after(err.headers) == 7
