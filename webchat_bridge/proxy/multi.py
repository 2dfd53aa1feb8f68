"""Multi-instance bridge: one uvicorn listener per configured instance."""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from ..types import BridgeConfig, InstanceConfig
from ..upstream import BrowserBinding
from .metrics import ProxyMetrics
from .server import create_app

logger = logging.getLogger(__name__)


def build_servers(
    instances: list[InstanceConfig],
    config: BridgeConfig,
    *,
    metrics: ProxyMetrics | None = None,
    binding: BrowserBinding | None = None,
    log_level: str = "info",
) -> list[uvicorn.Server]:
    """One uvicorn server per instance, all sharing *metrics*.

    Each instance serves its own provider with its own session registry;
    only the metrics collector (and the browser binding, if any) is shared.
    """
    if metrics is None:
        metrics = ProxyMetrics()

    servers: list[uvicorn.Server] = []
    for inst in instances:
        label = inst.label or inst.provider
        app = create_app(
            config,
            provider_name=inst.provider,
            binding=binding,
            metrics=metrics,
            instance_label=label,
        )
        server_config = uvicorn.Config(
            app,
            host=inst.host,
            port=inst.port,
            log_level=log_level,
            timeout_graceful_shutdown=2,
        )
        servers.append(uvicorn.Server(server_config))
        print(f"  [{label}] {inst.host}:{inst.port} -> {inst.provider}", flush=True)
    return servers


async def run_multi_instance(
    instances: list[InstanceConfig],
    config: BridgeConfig,
    *,
    metrics: ProxyMetrics | None = None,
    binding: BrowserBinding | None = None,
    log_level: str = "info",
) -> None:
    """Start every instance and serve until all listeners stop."""
    servers = build_servers(
        instances, config, metrics=metrics, binding=binding, log_level=log_level,
    )
    print(f"Starting {len(servers)} bridge instance(s)...", flush=True)
    await asyncio.gather(*(s.serve() for s in servers))
