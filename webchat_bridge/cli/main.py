"""CLI: webchat-bridge serve, models, providers, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..config import load_config, validate_config
from ..providers import PROVIDER_TYPES, build_provider
from ..types import BridgeConfig, ConfigError, ProviderConfig


def _load(args) -> BridgeConfig:
    try:
        return load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def _provider_config(config: BridgeConfig, name: str) -> ProviderConfig:
    return config.providers.get(name) or ProviderConfig(name=name)


class _SuppressCancelled(logging.Filter):
    """Hide CancelledError tracebacks uvicorn logs when it force-closes streams."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info:
            if record.exc_info[0] is asyncio.CancelledError:
                return False
        return True


def cmd_serve(args):
    """Start the bridge (one listener, or every configured instance)."""
    import uvicorn

    from ..proxy import create_app

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    config = _load(args)
    errors = validate_config(config)
    if errors:
        print("Config validation errors:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)

    if config.instances and not args.provider:
        # Multi-instance mode: --provider/--host/--port are ignored
        from ..proxy.multi import run_multi_instance

        print(f"Multi-instance bridge ({len(config.instances)} listeners):")
        asyncio.run(run_multi_instance(
            config.instances, config, log_level=args.log_level.lower(),
        ))
        return

    name = args.provider or config.provider
    try:
        app = create_app(config, provider_name=name)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    host = args.host or config.server.host
    port = args.port or config.server.port
    print(f"webchat-bridge on {host}:{port} -> {name}")
    uvicorn.run(
        app, host=host, port=port, log_level=args.log_level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_models(args):
    """Print the model catalog of a provider."""
    config = _load(args)
    name = args.provider or config.provider
    try:
        provider = build_provider(_provider_config(config, name))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Models for {provider.label}: {provider.describe()}")
    width = max((len(m.name) for m in provider.models), default=4)
    for m in provider.models:
        flags = " [thinking]" if m.thinking else ""
        upstream = f" -> {m.upstream}" if m.upstream and m.upstream != m.name else ""
        print(f"  {m.name:<{width}}{upstream}{flags}")


def cmd_providers(args):
    """List the known provider strategies."""
    config = _load(args)
    print("Provider types:")
    for name in sorted(PROVIDER_TYPES):
        cls = PROVIDER_TYPES[name]
        marker = " (active)" if name == config.provider else ""
        state = "stateful" if cls.stateful else "stateless"
        print(f"  {name:<10} {cls.transport:<8} {state}{marker}")
    custom = sorted(n for n, p in config.providers.items() if n != p.strategy)
    if custom:
        print("Configured sections:")
        for name in custom:
            print(f"  {name} (type: {config.providers[name].strategy})")


def cmd_config_validate(args):
    """Validate config file."""
    config = _load(args)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Provider: {config.provider}")
        print(f"  Thinking mode: {config.stream.thinking_mode}")
        print(f"  Session TTL: {config.sessions.max_age_seconds:g}s")
        print(f"  On conflict: {config.sessions.on_conflict}")
        if config.instances:
            print(f"  Instances: {len(config.instances)}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="webchat-bridge",
        description="Serve web chat providers behind an OpenAI/Ollama-compatible API",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the bridge")
    serve_parser.add_argument(
        "--provider", default=None,
        help="Provider section to serve. Disables multi-instance mode when given.",
    )
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument(
        "--log-level", default="info",
        choices=["debug", "info", "warning", "error"],
    )

    # models
    models_parser = subparsers.add_parser("models", help="List a provider's models")
    models_parser.add_argument("--provider", default=None)

    # providers
    subparsers.add_parser("providers", help="List provider types")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "models":
        cmd_models(args)
    elif args.command == "providers":
        cmd_providers(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: webchat-bridge config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
