"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml

from .types import (
    BridgeConfig,
    ConfigError,
    InstanceConfig,
    ModelInfo,
    ProviderConfig,
    ServerConfig,
    SessionConfig,
    StreamConfig,
)

CONFIG_FILENAMES = [
    "webchat-bridge.yaml",
    "webchat-bridge.yml",
    "webchat-bridge.json",
]

THINKING_MODES = ("buffered", "stream", "hidden")
CONFLICT_POLICIES = ("reject", "queue")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _parse_model(raw: Any) -> ModelInfo:
    if isinstance(raw, str):
        return ModelInfo(name=raw)
    if not isinstance(raw, dict) or not raw.get("name"):
        raise ConfigError(f"model entry needs a name: {raw!r}")
    return ModelInfo(
        name=raw["name"],
        upstream=raw.get("upstream", ""),
        display_name=raw.get("display_name", ""),
        family=raw.get("family", ""),
        description=raw.get("description", ""),
        tags=list(raw.get("tags", [])),
        thinking=bool(raw.get("thinking", False)),
        context_length=int(raw.get("context_length", 32_768)),
        parameter_size=str(raw.get("parameter_size", "Unknown")),
    )


def _parse_provider(name: str, raw: dict[str, Any]) -> ProviderConfig:
    timeout = raw.get("timeout_seconds")
    return ProviderConfig(
        name=name,
        type=raw.get("type", ""),
        base_url=raw.get("base_url", ""),
        headers={str(k): str(v) for k, v in (raw.get("headers") or {}).items()},
        api_key=raw.get("api_key", ""),
        api_key_env=raw.get("api_key_env", ""),
        chat_id=raw.get("chat_id", "") or "",
        timeout_seconds=float(timeout) if timeout is not None else None,
        models=[_parse_model(m) for m in raw.get("models", [])],
        options=dict(raw.get("options", {})),
    )


def _build_config(raw: dict[str, Any]) -> BridgeConfig:
    """Build a BridgeConfig from a raw dict."""
    providers: dict[str, ProviderConfig] = {}
    for name, pconf in (raw.get("providers") or {}).items():
        providers[name] = _parse_provider(name, pconf if isinstance(pconf, dict) else {})

    active = raw.get("provider", "qwen")

    server_raw = raw.get("server", {})
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=int(server_raw.get("port", 11434)),
        version=str(server_raw.get("version", "0.6.4")),
    )

    sessions_raw = raw.get("sessions", {})
    sessions = SessionConfig(
        max_age_seconds=float(sessions_raw.get("max_age_seconds", 3600)),
        sweep_interval_seconds=float(sessions_raw.get("sweep_interval_seconds", 1800)),
        on_conflict=sessions_raw.get("on_conflict", "reject"),
        reset_on_first_turn=bool(sessions_raw.get("reset_on_first_turn", True)),
    )

    stream_raw = raw.get("stream", {})
    stream = StreamConfig(
        timeout_seconds=float(stream_raw.get("timeout_seconds", 30)),
        thinking_mode=stream_raw.get("thinking_mode", "buffered"),
        thinking_open=stream_raw.get("thinking_open", "<thinking>\n"),
        thinking_close=stream_raw.get("thinking_close", "\n</thinking>\n\n"),
    )

    instances = [
        InstanceConfig(
            port=int(inst.get("port", 11434)),
            provider=inst.get("provider", active),
            label=inst.get("label", ""),
            host=inst.get("host", server.host),
        )
        for inst in raw.get("instances", [])
    ]

    # Providers referenced but not configured get an empty section so the
    # strategy defaults apply.
    for name in [active, *(i.provider for i in instances)]:
        if name and name not in providers:
            providers[name] = ProviderConfig(name=name)

    return BridgeConfig(
        provider=active,
        providers=providers,
        server=server,
        sessions=sessions,
        stream=stream,
        instances=instances,
    )


def resolve_api_key(pconf: ProviderConfig) -> str:
    """Return the provider's API key, preferring the environment variable."""
    if pconf.api_key_env:
        value = os.environ.get(pconf.api_key_env, "")
        if value:
            return value
    return pconf.api_key


def validate_config(config: BridgeConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    from .providers import PROVIDER_TYPES

    errors: list[str] = []

    if config.provider not in config.providers:
        errors.append(f"Active provider '{config.provider}' not found in providers section")

    for name, pconf in config.providers.items():
        if pconf.strategy not in PROVIDER_TYPES:
            errors.append(
                f"Provider '{name}' has unknown type '{pconf.strategy}' "
                f"(known: {', '.join(sorted(PROVIDER_TYPES))})"
            )
        if pconf.timeout_seconds is not None and pconf.timeout_seconds <= 0:
            errors.append(f"Provider '{name}' timeout_seconds must be > 0")

    if config.stream.timeout_seconds <= 0:
        errors.append("stream.timeout_seconds must be > 0")
    if config.stream.thinking_mode not in THINKING_MODES:
        errors.append(
            f"stream.thinking_mode '{config.stream.thinking_mode}' must be one of "
            f"{', '.join(THINKING_MODES)}"
        )

    if config.sessions.max_age_seconds <= 0:
        errors.append("sessions.max_age_seconds must be > 0")
    if config.sessions.sweep_interval_seconds <= 0:
        errors.append("sessions.sweep_interval_seconds must be > 0")
    elif config.sessions.sweep_interval_seconds > config.sessions.max_age_seconds:
        errors.append(
            f"sessions.sweep_interval_seconds ({config.sessions.sweep_interval_seconds:g}) "
            f"must be <= max_age_seconds ({config.sessions.max_age_seconds:g})"
        )
    if config.sessions.on_conflict not in CONFLICT_POLICIES:
        errors.append(
            f"sessions.on_conflict '{config.sessions.on_conflict}' must be one of "
            f"{', '.join(CONFLICT_POLICIES)}"
        )

    seen_ports: set[int] = set()
    for inst in config.instances:
        if inst.port in seen_ports:
            errors.append(f"Duplicate instance port {inst.port}")
        seen_ports.add(inst.port)
        if inst.provider not in config.providers:
            errors.append(f"Instance on port {inst.port} uses unknown provider '{inst.provider}'")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> BridgeConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    try:
        if path.suffix == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return _build_config(raw)
