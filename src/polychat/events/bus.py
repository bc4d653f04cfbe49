"""Async pub/sub channel from the chat core to its UI.

Stream progress travels as :class:`StreamSnapshot` values (answer and
thinking deltas plus the phase), carried on ``STREAM_UPDATE`` events so a
UI can subscribe either to typed snapshots or to raw events.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable

from polychat.types import ChatEvent, EventType, StreamPhase

_logger = logging.getLogger(__name__)

# Subscribe to every event type
_WILDCARD = "*"

# Sync or async callables taking a ChatEvent
Handler = Callable[[ChatEvent], Any]
SnapshotHandler = Callable[["StreamSnapshot"], Any]


@dataclass(frozen=True)
class StreamSnapshot:
    """One throttled publish of an in-flight reply.

    ``answer``/``thinking`` are the accumulated texts; the deltas hold only
    what was committed since the previous snapshot.
    """

    answer_delta: str
    thinking_delta: str
    phase: StreamPhase = StreamPhase.STREAMING
    answer: str = ""
    thinking: str = ""
    message_id: str = ""

    def to_event(self) -> ChatEvent:
        return ChatEvent(type=EventType.STREAM_UPDATE, data=asdict(self))

    @classmethod
    def from_event(cls, event: ChatEvent) -> StreamSnapshot:
        if event.type != EventType.STREAM_UPDATE:
            raise ValueError(f"Not a stream update: {event.type}")
        data = event.data
        return cls(
            answer_delta=data.get("answer_delta", ""),
            thinking_delta=data.get("thinking_delta", ""),
            phase=StreamPhase(data.get("phase", StreamPhase.STREAMING)),
            answer=data.get("answer", ""),
            thinking=data.get("thinking", ""),
            message_id=data.get("message_id", ""),
        )


class EventBus:
    """Fan out :class:`ChatEvent` snapshots to subscribed handlers.

    Handlers may be sync or async.  A failing handler is logged and never
    interrupts the stream that emitted the event.  The most recent
    ``max_history`` events are kept for late subscribers and tests.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[ChatEvent] = []
        self._max_history = max_history

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event_type* (or ``"*"``).

        Returns a callable that removes the subscription.
        """
        key = self._key(event_type)
        self._handlers.setdefault(key, []).append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: ChatEvent) -> None:
        """Deliver *event* to type-specific and wildcard handlers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        if not handlers:
            return

        await asyncio.gather(
            *(self._call_handler(handler, event) for handler in handlers),
            return_exceptions=True,
        )

    @property
    def history(self) -> list[ChatEvent]:
        return list(self._history)

    def events_of(self, event_type: EventType) -> list[ChatEvent]:
        """Recorded events of one type, oldest first."""
        return [e for e in self._history if e.type == event_type]

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Stream snapshots
    # ------------------------------------------------------------------

    async def publish(self, snapshot: StreamSnapshot) -> None:
        """Emit *snapshot* as a ``STREAM_UPDATE`` event."""
        await self.emit(snapshot.to_event())

    def subscribe_snapshots(self, handler: SnapshotHandler) -> Callable[[], None]:
        """Register *handler* to receive typed :class:`StreamSnapshot` values."""

        def deliver(event: ChatEvent) -> Any:
            return handler(StreamSnapshot.from_event(event))

        return self.subscribe(EventType.STREAM_UPDATE, deliver)

    def snapshots(self, message_id: str | None = None) -> list[StreamSnapshot]:
        """Recorded snapshots, optionally for one reply only."""
        result = [StreamSnapshot.from_event(e) for e in self.events_of(EventType.STREAM_UPDATE)]
        if message_id is not None:
            result = [s for s in result if s.message_id == message_id]
        return result

    @property
    def last_phase(self) -> StreamPhase | None:
        """Phase carried by the most recent event that has one."""
        for event in reversed(self._history):
            if event.phase is not None:
                return event.phase
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: ChatEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type,
            )
