from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

requests_total = Counter(
    "provider_requests_total",
    "Total requests handled by provider",
    labelnames=["provider", "status"],
)

request_latency_seconds = Histogram(
    "provider_request_latency_seconds",
    "Provider request latency",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["provider"],
)

provider_errors_total = Counter(
    "provider_errors_total",
    "Errors raised by providers, by error class",
    labelnames=["provider", "kind"],
)

http_client_retries_total = Counter(
    "http_client_retries_total",
    "Retries scheduled by the shared HTTP client",
    labelnames=["reason"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
