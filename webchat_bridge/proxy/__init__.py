"""OpenAI/Ollama-compatible HTTP front end."""

from .metrics import ProxyMetrics
from .server import BridgeState, create_app

__all__ = ["BridgeState", "ProxyMetrics", "create_app"]
