"""Shared transient types for polychat: enums, requests and events."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Provider / capability enums
# ---------------------------------------------------------------------------

class ApiType(str, enum.Enum):
    """Wire-protocol variant spoken by a provider."""

    OPENAI = "openai"
    GEMINI = "gemini"
    OPENAI_RESPONSES = "openai_responses"
    ANTHROPIC = "anthropic"
    WORKERS_AI = "workers_ai"


class ThinkingMode(str, enum.Enum):
    AUTO = "auto"
    ENABLED = "enabled"
    DISABLED = "disabled"


class CapabilityState(str, enum.Enum):
    AUTO = "auto"
    ENABLED = "enabled"
    DISABLED = "disabled"


class SupportStatus(str, enum.Enum):
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# HTTP request description
# ---------------------------------------------------------------------------

@dataclass
class HttpRequest:
    """Fully-built vendor request, ready for the transport."""

    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    method: str = "POST"


# ---------------------------------------------------------------------------
# Stream lifecycle
# ---------------------------------------------------------------------------

class StreamPhase(str, enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    RETRY_PENDING = "retry_pending"
    FAILED = "failed"


class EventType(enum.Enum):
    """Event types emitted from the chat core to its UI."""

    # Stream lifecycle
    STREAM_STARTED = "stream.started"
    STREAM_UPDATE = "stream.update"
    STREAM_RETRYING = "stream.retrying"
    STREAM_DONE = "stream.done"
    STREAM_CANCELLED = "stream.cancelled"
    STREAM_FAILED = "stream.failed"

    # Session bookkeeping
    SESSION_UPDATED = "session.updated"
    SESSION_TITLED = "session.titled"

    # Background jobs
    MEMORY_EXTRACTED = "memory.extracted"


@dataclass
class ChatEvent:
    """Event emitted by the chat core via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def phase(self) -> StreamPhase | None:
        return self.data.get("phase")
