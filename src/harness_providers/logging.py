from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog


_SENSITIVE_KEYS = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "api_key",
    "apikey",
    "api-key",
    "openai_api_key",
    "anthropic_api_key",
    "openrouter_api_key",
}

_SENSITIVE_FRAGMENTS = ("apikey", "api_key", "secret", "password", "access_token")

# Bearer tokens plus the key shapes issued by OpenAI (sk-...), Anthropic (sk-ant-...) and OpenRouter (sk-or-...)
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._-]{6,})")
_PROVIDER_KEY_RE = re.compile(r"\bsk-(?:ant-|or-)?[A-Za-z0-9_-]{8,}")

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def _is_sensitive_key(key: Any) -> bool:
    key_str = str(key).lower()
    return key_str in _SENSITIVE_KEYS or any(s in key_str for s in _SENSITIVE_FRAGMENTS)


def redact_text(value: str, *, secrets: Iterable[str] = ()) -> str:
    out = value
    for secret in secrets:
        if secret and secret in out:
            out = out.replace(secret, "[REDACTED]")
    out = _BEARER_RE.sub("Bearer [REDACTED]", out)
    return _PROVIDER_KEY_RE.sub("[REDACTED]", out)


def redact(obj: Any, *, secrets: list[str]) -> Any:
    if obj is None or isinstance(obj, (int, float, bool)):
        return obj
    if isinstance(obj, str):
        return redact_text(obj, secrets=secrets)
    if isinstance(obj, list):
        return [redact(v, secrets=secrets) for v in obj]
    if isinstance(obj, tuple):
        return tuple(redact(v, secrets=secrets) for v in obj)
    if isinstance(obj, Mapping):
        return {
            k: "[REDACTED]" if _is_sensitive_key(k) else redact(v, secrets=secrets)
            for k, v in obj.items()
        }
    return obj


def make_redaction_processor(*, secrets: list[str] | None = None) -> Processor:
    secrets_norm = [s for s in (secrets or []) if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], redact(event_dict, secrets=secrets_norm))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        cast(Processor, structlog.processors.format_exc_info),
        # unconditional, unlike the secret list
        make_redaction_processor(secrets=secrets),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )
