"""Thread-safe event collector behind ``GET /api/stats``."""

from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from datetime import datetime, timezone

EVENT_TYPES = ("request", "response", "error", "timeout", "conflict")


class ProxyMetrics:
    """Collects structured events from the request pipeline.

    Thread-safe: several uvicorn instances in one process may share a
    collector. Only the most recent ``max_events`` events are kept.
    """

    def __init__(self, max_events: int = 5000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._counts: dict[str, int] = {t: 0 for t in EVENT_TYPES}
        self._lock = threading.Lock()
        self._seq = 0

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)  # shallow copy to avoid caller mutation
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            etype = event.get("type", "")
            self._counts[etype] = self._counts.get(etype, 0) + 1
            self._events.append(event)

    def snapshot(self, *, active_sessions: int = 0) -> dict:
        """Aggregate counters for ``/api/stats``."""
        with self._lock:
            responses = [e for e in self._events if e.get("type") == "response"]
            latencies = [r["total_ms"] for r in responses if "total_ms" in r]
            first_token = [r["first_token_ms"] for r in responses if r.get("first_token_ms") is not None]
            prompt_tokens = sum(r.get("prompt_tokens", 0) for r in responses)
            completion_tokens = sum(r.get("completion_tokens", 0) for r in responses)
            total_seconds = sum(latencies) / 1000 if latencies else 0

            return {
                "type": "snapshot",
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_requests": self._counts.get("request", 0),
                "total_responses": self._counts.get("response", 0),
                "total_errors": self._counts.get("error", 0),
                "total_timeouts": self._counts.get("timeout", 0),
                "total_conflicts": self._counts.get("conflict", 0),
                "est_prompt_tokens": prompt_tokens,
                "est_completion_tokens": completion_tokens,
                "avg_latency_ms": round(statistics.mean(latencies), 1) if latencies else 0,
                "avg_first_token_ms": round(statistics.mean(first_token), 1) if first_token else 0,
                "tokens_per_second": (
                    round(completion_tokens / total_seconds, 1) if total_seconds > 0 else 0
                ),
                "active_sessions": active_sessions,
                "recent_responses": list(responses[-50:]),
            }
