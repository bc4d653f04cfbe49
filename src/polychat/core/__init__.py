"""Stream orchestration and chat session glue."""

from polychat.core.chat import ChatController
from polychat.core.context import build_history
from polychat.core.orchestrator import StreamOrchestrator, StreamResult, StreamState

__all__ = [
    "ChatController",
    "StreamOrchestrator",
    "StreamResult",
    "StreamState",
    "build_history",
]
