"""All dataclasses, enums, and exceptions for webchat-bridge."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Transport & decoding
# ---------------------------------------------------------------------------

@dataclass
class RawFrame:
    """One unit of upstream transport data (SSE chunk or captured body)."""
    source: str
    payload: bytes | str
    seq: int = 0


@dataclass
class ProviderEvent:
    """A decoded ``data:`` payload in the upstream's own schema."""
    data: dict = field(default_factory=dict)
    event: str = ""       # SSE "event:" field in force for this line
    seq: int = 0
    done: bool = False    # completion sentinel reached


@dataclass
class Linkage:
    """Conversation-linkage identifiers carried by an upstream event."""
    parent_id: str | None = None
    chat_id: str | None = None


# ---------------------------------------------------------------------------
# Canonical deltas
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    THINKING = "thinking"
    ANSWER = "answer"


@dataclass
class Delta:
    phase: Phase
    text: str
    is_final: bool = False
    role: str | None = None
    is_error: bool = False


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@dataclass
class ConversationSession:
    """Upstream linkage state for one caller-side conversation.

    Owned by :class:`~webchat_bridge.core.registry.SessionRegistry`; other
    components change it only through the registry's accessors.
    """
    key: str
    chat_id: str
    parent_id: str | None = None   # None = next turn starts the chain
    created_at: float = 0.0
    last_access: float = 0.0
    turns: int = 0
    turn_lock: asyncio.Lock = field(
        default_factory=asyncio.Lock, repr=False, compare=False,
    )

    @property
    def in_flight(self) -> bool:
        return self.turn_lock.locked()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class ModelInfo:
    """One entry of a provider's model catalog."""
    name: str                        # caller-visible model name
    upstream: str = ""               # model id sent upstream ("" = same as name)
    display_name: str = ""
    family: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    thinking: bool = False
    context_length: int = 32_768
    parameter_size: str = "Unknown"

    @property
    def upstream_name(self) -> str:
        return self.upstream or self.name


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    """Credentials and endpoints for one upstream provider."""
    name: str
    type: str = ""                   # strategy name; defaults to ``name``
    base_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    api_key: str = ""
    api_key_env: str = ""
    chat_id: str = ""                # fixed upstream chat (fallback policy)
    timeout_seconds: float | None = None
    models: list[ModelInfo] = field(default_factory=list)
    options: dict = field(default_factory=dict)

    @property
    def strategy(self) -> str:
        return self.type or self.name


@dataclass
class SessionConfig:
    max_age_seconds: float = 3600.0
    sweep_interval_seconds: float = 1800.0
    on_conflict: str = "reject"      # "reject" or "queue"
    reset_on_first_turn: bool = True


@dataclass
class StreamConfig:
    timeout_seconds: float = 30.0
    thinking_mode: str = "buffered"  # "buffered", "stream", "hidden"
    thinking_open: str = "<thinking>\n"
    thinking_close: str = "\n</thinking>\n\n"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 11434
    version: str = "0.6.4"           # reported by /api/version


@dataclass
class InstanceConfig:
    """Configuration for a single listener in multi-instance mode."""
    port: int = 11434
    provider: str = ""
    label: str = ""
    host: str = "127.0.0.1"


@dataclass
class BridgeConfig:
    provider: str = "qwen"
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    server: ServerConfig = field(default_factory=ServerConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    instances: list[InstanceConfig] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BridgeError(Exception):
    """Base class for webchat-bridge errors."""


class ConfigError(BridgeError):
    pass


class DecodeError(BridgeError):
    """A frame could not be decoded. Dropped, never surfaced to the caller."""


class UpstreamError(BridgeError):
    def __init__(
        self, message: str, provider: str = "", status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class StreamTimeoutError(BridgeError):
    def __init__(self, seconds: float):
        super().__init__(f"upstream timed out after {seconds:g}s")
        self.seconds = seconds


class SessionConflictError(BridgeError):
    """A second turn was requested while one is in flight for the same key."""

    def __init__(self, key: str):
        super().__init__(f"conversation {key[:12]} already has a turn in progress")
        self.key = key
