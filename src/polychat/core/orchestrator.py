"""Stream orchestrator: one assistant reply from request to finalize.

    adapter.build_request → transport → adapter.parse_line
        → ThinkTagSplitter → PublishThrottle → EventBus

Phases: ``idle → sending → streaming → {finalizing, cancelled,
retry_pending, failed}``.  The orchestrator is the single writer of the
placeholder assistant message while a stream is in flight; the UI reads
the transient :attr:`StreamOrchestrator.streaming_text` slot and the
published events instead.  The session store is saved once, at the
terminal transition.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from polychat.config import ChatSettings, ProviderConfig
from polychat.errors import TransportError
from polychat.events.bus import EventBus, StreamSnapshot
from polychat.llm.adapters import create_adapter
from polychat.llm.client import ProviderClient
from polychat.models import Message, Session
from polychat.store.sessions import SessionStore
from polychat.stream.tags import ThinkTagSplitter
from polychat.stream.throttle import PublishThrottle
from polychat.types import ChatEvent, EventType, StreamPhase, ThinkingMode

_logger = logging.getLogger(__name__)

STOPPED_SUFFIX = "\n[已停止]"


@dataclass
class StreamState:
    """Transient per-request state; discarded when the stream ends."""

    splitter: ThinkTagSplitter = field(default_factory=ThinkTagSplitter)
    throttle: PublishThrottle = field(default_factory=PublishThrottle)
    retry_count: int = 0
    first_token_time: float | None = None
    # Committed text not yet published
    unpublished_answer: str = ""
    unpublished_thinking: str = ""

    def reset_attempt(self) -> None:
        self.splitter.reset()
        self.throttle.reset()
        self.first_token_time = None
        self.unpublished_answer = ""
        self.unpublished_thinking = ""


@dataclass
class StreamResult:
    message: Message
    phase: StreamPhase
    retry_count: int = 0
    error: str | None = None


class StreamOrchestrator:
    """Drive one streaming reply with retry, throttle and cancellation.

    Parameters
    ----------
    client:
        Transport used to open the vendor stream.
    store:
        Session store; saved at finalize, cancel or failure only.
    settings:
        Temperature, retry policy, thinking visibility and throttle.
    event_bus:
        Channel to the UI (optional).
    clock:
        Wall clock for message timestamps.
    throttle_clock:
        Monotonic clock for the publish throttle.
    """

    def __init__(
        self,
        client: ProviderClient,
        store: SessionStore,
        settings: ChatSettings,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        throttle_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings
        self._event_bus = event_bus or EventBus()
        self._clock = clock
        self._throttle_clock = throttle_clock
        self._cancel_event = asyncio.Event()

        self.phase = StreamPhase.IDLE
        self.state: StreamState | None = None
        self.streaming_text = ""
        self.streaming_thinking = ""

    @property
    def is_running(self) -> bool:
        return self.phase != StreamPhase.IDLE

    def cancel(self) -> None:
        """Request cancellation; honoured before the next chunk or network wait."""
        self._cancel_event.set()

    @property
    def _cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(
        self,
        session: Session,
        message: Message,
        history: list[Message],
        model_id: str,
        config: ProviderConfig,
    ) -> StreamResult:
        """Stream a reply into *message* (already appended to *session*).

        Returns
        -------
        StreamResult
            The mutated message and the terminal phase reached.

        Raises
        ------
        RuntimeError
            When another stream is still running on this orchestrator.
        """
        if self.is_running:
            raise RuntimeError("A stream is already running on this orchestrator")
        self.state = StreamState(
            throttle=PublishThrottle(self._settings.throttle, clock=self._throttle_clock),
        )
        state = self.state

        try:
            await self._set_phase(StreamPhase.SENDING, EventType.STREAM_STARTED, {
                "session_id": session.id,
                "message_id": message.id,
                "model_id": model_id,
            })
            while True:
                state.reset_attempt()
                try:
                    await self._attempt(message, history, model_id, config)
                except TransportError as exc:
                    if self._cancelled:
                        return await self._finish_cancelled(message)
                    _logger.warning(
                        "Stream failed (attempt %d/%d): %s",
                        state.retry_count + 1, self._settings.max_retries + 1, exc,
                    )
                    if (
                        self._settings.auto_retry_enabled
                        and state.retry_count < self._settings.max_retries
                    ):
                        state.retry_count += 1
                        self.streaming_text = (
                            f"正在重试 ({state.retry_count}/{self._settings.max_retries})..."
                        )
                        self.streaming_thinking = ""
                        await self._set_phase(StreamPhase.RETRY_PENDING, EventType.STREAM_RETRYING, {
                            "retry_count": state.retry_count,
                            "max_retries": self._settings.max_retries,
                            "error": str(exc),
                            "streaming_text": self.streaming_text,
                        })
                        await asyncio.sleep(self._settings.retry_delay)
                        if self._cancelled:
                            return await self._finish_cancelled(message)
                        self.phase = StreamPhase.SENDING
                        continue
                    return await self._finish_failed(message, str(exc))

                if self._cancelled:
                    return await self._finish_cancelled(message)
                return await self._finish_done(message)

        except asyncio.CancelledError:
            self._cancel_event.set()
            return await self._finish_cancelled(message)
        except Exception as exc:
            _logger.exception("Stream orchestrator error")
            return await self._finish_failed(message, f"{type(exc).__name__}: {exc}")
        finally:
            self.phase = StreamPhase.IDLE
            # A cancel request applies to one stream only
            self._cancel_event.clear()

    async def _attempt(
        self,
        message: Message,
        history: list[Message],
        model_id: str,
        config: ProviderConfig,
    ) -> None:
        state = self.state
        assert state is not None
        adapter = create_adapter(config.api_type)
        request = adapter.build_request(history, model_id, config, self._settings.temperature)

        if self._cancelled:
            return
        lines = self._client.stream_lines(request, on_open=self._mark_streaming)
        try:
            async for line in lines:
                if self._cancelled:
                    break

                delta = adapter.parse_line(line)
                if not delta:
                    continue
                if state.first_token_time is None:
                    state.first_token_time = self._clock()
                    message.first_token_time = state.first_token_time

                answer_delta, thinking_delta = state.splitter.feed(delta)
                state.unpublished_answer += answer_delta
                state.unpublished_thinking += thinking_delta
                if state.throttle.should_publish(state.splitter.total_length):
                    await self._publish(message)
        finally:
            await lines.aclose()

    def _mark_streaming(self) -> None:
        # Response status confirmed; body may still be empty
        self.phase = StreamPhase.STREAMING

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    @property
    def _show_thinking(self) -> bool:
        return self._settings.thinking_mode != ThinkingMode.DISABLED

    async def _publish(self, message: Message) -> None:
        state = self.state
        assert state is not None
        self.streaming_text = state.splitter.answer.strip()
        thinking_delta = ""
        if self._show_thinking:
            self.streaming_thinking = state.splitter.thinking
            thinking_delta = state.unpublished_thinking
        await self._event_bus.publish(StreamSnapshot(
            answer_delta=state.unpublished_answer,
            thinking_delta=thinking_delta,
            phase=StreamPhase.STREAMING,
            answer=self.streaming_text,
            thinking=self.streaming_thinking,
            message_id=message.id,
        ))
        state.unpublished_answer = ""
        state.unpublished_thinking = ""

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _flush(self) -> tuple[str, str]:
        state = self.state
        assert state is not None
        state.splitter.finish()
        return state.splitter.answer.strip(), state.splitter.thinking

    def _kept_thinking(self, thinking: str) -> str | None:
        if not self._show_thinking or not thinking:
            return None
        return thinking

    def _clear_streaming_slot(self) -> None:
        self.streaming_text = ""
        self.streaming_thinking = ""

    async def _finish_done(self, message: Message) -> StreamResult:
        answer, thinking = self._flush()
        message.text = answer
        message.thinking_text = self._kept_thinking(thinking)
        message.complete_time = self._clock()
        if self.state and self.state.first_token_time is not None:
            message.first_token_time = self.state.first_token_time
        self._clear_streaming_slot()
        self._store.save()

        retries = self.state.retry_count if self.state else 0
        await self._set_phase(StreamPhase.FINALIZING, EventType.STREAM_DONE, {
            "message_id": message.id,
            "answer": message.text,
            "thinking": message.thinking_text or "",
            "retry_count": retries,
        })
        return StreamResult(message=message, phase=StreamPhase.FINALIZING, retry_count=retries)

    async def _finish_cancelled(self, message: Message) -> StreamResult:
        answer, thinking = self._flush()
        message.text = answer + STOPPED_SUFFIX if answer else ""
        if self._kept_thinking(thinking) is not None:
            message.thinking_text = thinking
        self._clear_streaming_slot()
        self._store.save()

        _logger.info("Stream cancelled after %d characters", len(answer))
        await self._set_phase(StreamPhase.CANCELLED, EventType.STREAM_CANCELLED, {
            "message_id": message.id,
            "answer": message.text,
        })
        retries = self.state.retry_count if self.state else 0
        return StreamResult(message=message, phase=StreamPhase.CANCELLED, retry_count=retries)

    async def _finish_failed(self, message: Message, error: str) -> StreamResult:
        answer, thinking = self._flush()
        retries = self.state.retry_count if self.state else 0
        if answer:
            message.text = f"{answer}\n[中断] {error}"
        elif retries:
            message.text = f"❌ [已重试 {retries} 次] {error}"
        else:
            message.text = f"❌ {error}"
        if self._kept_thinking(thinking) is not None:
            message.thinking_text = thinking
        self._clear_streaming_slot()
        self._store.save()

        await self._set_phase(StreamPhase.FAILED, EventType.STREAM_FAILED, {
            "message_id": message.id,
            "answer": message.text,
            "error": error,
            "retry_count": retries,
        })
        return StreamResult(
            message=message, phase=StreamPhase.FAILED, retry_count=retries, error=error,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _set_phase(
        self, phase: StreamPhase, event_type: EventType, data: dict[str, Any],
    ) -> None:
        self.phase = phase
        await self._emit(event_type, {"phase": phase, **data})

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.emit(ChatEvent(type=event_type, data=data))
