from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from typing import Any

from .config import HarnessSettings
from .contracts import AIRequest, ProviderConfig
from .errors import ProviderError
from .logging import configure_logging
from .metrics import maybe_start_metrics
from .registry import available_providers, create_provider
from .strategy import AIProviderStrategy


def _provider_config(provider: AIProviderStrategy, model: str | None) -> ProviderConfig:
    parameters: dict[str, Any] = {}
    if model:
        parameters["model"] = model
    return ProviderConfig(
        name=provider.name,
        version=provider.version,
        parameters=parameters,
        services={service: {"enabled": True} for service in provider.supported_service_types},
    )


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def cmd_check(settings: HarnessSettings, name: str, model: str | None) -> int:
    provider = create_provider(name, settings=settings)
    config = _provider_config(provider, model)
    try:
        result = await provider.test_connection(config)
    finally:
        await provider.cleanup()
    _emit(result.model_dump(mode="json"))
    return 0 if result.success else 1


async def cmd_ask(
    settings: HarnessSettings,
    name: str,
    prompt: str,
    *,
    model: str | None,
    service_type: str,
    temperature: float | None,
    max_tokens: int | None,
) -> int:
    provider = create_provider(name, settings=settings)
    parameters: dict[str, Any] = {}
    if temperature is not None:
        parameters["temperature"] = temperature
    if max_tokens is not None:
        parameters["maxTokens"] = max_tokens
    request = AIRequest(
        id=f"cli-{uuid.uuid4().hex[:12]}",
        service_type=service_type,
        prompt=prompt,
        parameters=parameters,
    )
    try:
        await provider.initialize(_provider_config(provider, model))
        response = await provider.send_request(request)
    except ProviderError as e:
        print(f"{type(e).__name__} ({e.field}): {e}", file=sys.stderr)
        return 1
    finally:
        await provider.cleanup()
    _emit(response.model_dump(mode="json"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="harness-providers", description="AI provider layer tools")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List available providers")

    check = sub.add_parser("check", help="Probe a provider's API with the configured key")
    check.add_argument("provider", help="Provider name")
    check.add_argument("--model", default=None, help="Model used for the probe")

    ask = sub.add_parser("ask", help="Send one prompt through a provider")
    ask.add_argument("provider", help="Provider name")
    ask.add_argument("prompt", help="Prompt text")
    ask.add_argument("--model", default=None, help="Model override")
    ask.add_argument("--service-type", dest="service_type", default="chat-completion", help="Service type")
    ask.add_argument("--temperature", type=float, default=None)
    ask.add_argument("--max-tokens", dest="max_tokens", type=int, default=None)
    return p


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)

    if args.command == "list":
        for name in available_providers():
            print(name)
        return 0

    settings = HarnessSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)
    maybe_start_metrics(enable=settings.enable_metrics, bind=settings.metrics_bind, port=settings.metrics_port)

    try:
        if args.command == "check":
            return asyncio.run(cmd_check(settings, args.provider, args.model))
        return asyncio.run(
            cmd_ask(
                settings,
                args.provider,
                args.prompt,
                model=args.model,
                service_type=args.service_type,
                temperature=args.temperature,
                max_tokens=args.max_tokens,
            )
        )
    except ProviderError as e:
        print(str(e), file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
