import httpx

from harness_providers.contracts import AIRequest, ProviderConfig


class Recorder:
    """MockTransport handler that replays queued responses and keeps the requests it saw."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        nxt = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(nxt, Exception):
            raise nxt
        # fresh copy so one queued response can be served repeatedly
        return httpx.Response(nxt.status_code, headers=nxt.headers, content=nxt.content)

    @property
    def calls(self) -> int:
        return len(self.requests)


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_config(name: str, **parameters) -> ProviderConfig:
    return ProviderConfig(
        name=name,
        version="1.0.0",
        parameters=parameters,
        services={"chat-completion": {"enabled": True, "configuration": {}}},
    )


def make_request(request_id: str = "req-001", service_type: str = "chat-completion", **parameters) -> AIRequest:
    return AIRequest(id=request_id, service_type=service_type, prompt="Generate test scenarios", parameters=parameters)
