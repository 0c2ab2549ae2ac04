import json

import httpx
import pytest

from support import Recorder, make_client, make_config, make_request
from harness_providers.config import HarnessSettings
from harness_providers.contracts import ProviderContext, SystemState
from harness_providers.errors import ProviderError, RateLimitError
from harness_providers.openrouter_provider import OpenRouterProvider

COMPLETION_OK = {
    "id": "gen-1",
    "model": "openai/gpt-4o-mini",
    "choices": [{"message": {"role": "assistant", "content": "Routed answer"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 9, "completion_tokens": 6, "total_tokens": 15},
}


def make_provider(rec, sleeper, environ=None, **settings):
    return OpenRouterProvider(
        settings=HarnessSettings(**settings),
        client=make_client(rec),
        sleeper=sleeper,
        environ=environ or {},
    )


@pytest.mark.asyncio
async def test_request_carries_attribution_headers(no_sleep):
    rec = Recorder(httpx.Response(200, json=COMPLETION_OK))
    p = make_provider(rec, no_sleep)
    await p.initialize(make_config("openrouter", apiKey="sk-or-test-000001", title="Nightly Suite"))

    resp = await p.send_request(make_request(temperature=0.4))

    sent = rec.requests[0]
    assert str(sent.url) == "https://openrouter.ai/api/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer sk-or-test-000001"
    assert sent.headers["http-referer"] == "https://test-automation-harness.com"
    assert sent.headers["x-title"] == "Nightly Suite"
    body = json.loads(sent.content)
    assert body["model"] == "openai/gpt-4o-mini"
    assert body["temperature"] == 0.4
    assert body["max_tokens"] == 2000

    assert resp.content == "Routed answer"
    assert resp.metadata.tokens_used == 15
    assert resp.metadata.provider == "openrouter"


@pytest.mark.asyncio
async def test_parameters_are_clamped(no_sleep):
    rec = Recorder(httpx.Response(200, json=COMPLETION_OK))
    p = make_provider(rec, no_sleep)
    await p.initialize(make_config("openrouter", apiKey="k", model="anthropic/claude-3-haiku"))

    await p.send_request(make_request(temperature=9, maxTokens=-5))

    body = json.loads(rec.requests[0].content)
    assert (body["model"], body["temperature"], body["max_tokens"]) == ("anthropic/claude-3-haiku", 2.0, 1)


@pytest.mark.parametrize(
    ("status", "field", "fragment"),
    [
        (400, "request", "request error"),
        (401, "authentication", "authentication failed"),
        (402, "billing", "billing error"),
        (404, "model", "model not found"),
        (422, "api", "API error"),
    ],
)
@pytest.mark.asyncio
async def test_status_mapping(no_sleep, status, field, fragment):
    rec = Recorder(httpx.Response(status, json={"error": {"message": "upstream said no", "code": status}}))
    p = make_provider(rec, no_sleep)
    await p.initialize(make_config("openrouter", apiKey="k"))

    with pytest.raises(ProviderError) as exc:
        await p.send_request(make_request())
    assert exc.value.field == field
    assert fragment in str(exc.value)


@pytest.mark.asyncio
async def test_rate_limit(no_sleep):
    rec = Recorder(httpx.Response(429, headers={"retry-after": "5"}, json={"error": {"message": "slow"}}))
    p = make_provider(rec, no_sleep)
    await p.initialize(make_config("openrouter", apiKey="k"))

    with pytest.raises(RateLimitError) as exc:
        await p.send_request(make_request())
    assert exc.value.retry_after == 5


@pytest.mark.asyncio
async def test_error_object_in_success_body(no_sleep):
    rec = Recorder(httpx.Response(200, json={"error": {"message": "Provider returned error", "code": 502}}))
    p = make_provider(rec, no_sleep)
    await p.initialize(make_config("openrouter", apiKey="k"))

    with pytest.raises(ProviderError) as exc:
        await p.send_request(make_request())
    assert exc.value.field == "api"
    assert "Provider returned error" in str(exc.value)
    assert p.get_statistics().failed_requests == 1


@pytest.mark.asyncio
async def test_probe_skips_attribution_headers(no_sleep):
    rec = Recorder(httpx.Response(200, json=COMPLETION_OK))
    p = make_provider(rec, no_sleep, environ={"OPENROUTER_API_KEY": "sk-or-env-000001"})

    result = await p.test_connection(make_config("openrouter"))

    assert result.success is True
    sent = rec.requests[0]
    assert "http-referer" not in sent.headers
    assert "x-title" not in sent.headers
    assert json.loads(sent.content)["max_tokens"] == 1


@pytest.mark.asyncio
async def test_probe_failure(no_sleep):
    rec = Recorder(httpx.Response(402, json={"error": {"message": "Insufficient credits"}}))
    p = make_provider(rec, no_sleep)

    result = await p.test_connection(make_config("openrouter", apiKey="k"))
    assert result.success is False
    assert result.error is not None and result.error.code == "CONNECTION_FAILED"


@pytest.mark.asyncio
async def test_confidence_applies_adjustments_once(no_sleep):
    rec = Recorder(httpx.Response(200, json=COMPLETION_OK))
    p = make_provider(rec, no_sleep)
    await p.initialize(make_config("openrouter", apiKey="k"))
    await p.send_request(make_request())

    busy = ProviderContext(system_state=SystemState(load=0.95))
    # 0.8 * 0.9 (load) * 1.1 (success rate)
    assert await p.calculate_confidence(make_request(), busy) == pytest.approx(0.792)
    assert await p.calculate_confidence(make_request(service_type="embeddings"), busy) == 0.0
