"""Tests for multi-instance mode."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

from webchat_bridge.config import load_config
from webchat_bridge.proxy.metrics import ProxyMetrics
from webchat_bridge.proxy.multi import build_servers, run_multi_instance


def _config():
    return load_config(config_dict={
        "provider": "qwen",
        "providers": {"gw": {"type": "openai", "base_url": "http://h/v1"}},
        "instances": [
            {"port": 11434, "label": "qwen-web"},
            {"port": 11435, "provider": "gw", "host": "0.0.0.0"},
        ],
    })


class FakeServer:
    created: list = []

    def __init__(self, config):
        self.config = config
        self.served = False
        FakeServer.created.append(self)

    async def serve(self):
        self.served = True


class FakeUvicornConfig:
    def __init__(self, app, host, port, log_level, timeout_graceful_shutdown):
        self.app = app
        self.host = host
        self.port = port
        self.log_level = log_level


class TestRunMultiInstance:
    def setup_method(self):
        FakeServer.created = []

    def test_one_server_per_instance(self):
        config = _config()
        with patch("webchat_bridge.proxy.multi.uvicorn") as mock_uv:
            mock_uv.Config = FakeUvicornConfig
            mock_uv.Server = FakeServer
            asyncio.run(run_multi_instance(config.instances, config))

        assert [s.config.port for s in FakeServer.created] == [11434, 11435]
        assert [s.config.host for s in FakeServer.created] == ["127.0.0.1", "0.0.0.0"]
        assert all(s.served for s in FakeServer.created)

    def test_each_instance_serves_its_provider(self):
        config = _config()
        with patch("webchat_bridge.proxy.multi.uvicorn") as mock_uv:
            mock_uv.Config = FakeUvicornConfig
            mock_uv.Server = FakeServer
            build_servers(config.instances, config)

        first, second = (s.config.app for s in FakeServer.created)
        assert first.state.bridge.provider.name == "qwen"
        assert first.state.instance_label == "qwen-web"
        assert second.state.bridge.provider.label == "gw"
        assert second.state.instance_label == "gw"
        assert first.state.bridge.registry is not second.state.bridge.registry

    def test_shared_metrics(self):
        config = _config()
        metrics = ProxyMetrics()
        with patch("webchat_bridge.proxy.multi.uvicorn") as mock_uv:
            mock_uv.Config = FakeUvicornConfig
            mock_uv.Server = FakeServer
            build_servers(config.instances, config, metrics=metrics)

        for server in FakeServer.created:
            assert server.config.app.state.bridge.metrics is metrics

    def test_status_lines(self, capsys):
        config = _config()
        with patch("webchat_bridge.proxy.multi.uvicorn") as mock_uv:
            mock_uv.Config = FakeUvicornConfig
            mock_uv.Server = FakeServer
            asyncio.run(run_multi_instance(config.instances, config))
        out = capsys.readouterr().out
        assert "[qwen-web] 127.0.0.1:11434 -> qwen" in out
        assert "[gw] 0.0.0.0:11435 -> gw" in out
        assert "Starting 2 bridge instance(s)" in out
