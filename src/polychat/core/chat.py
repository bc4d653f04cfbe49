"""Chat controller: send / regenerate / edit glue around the orchestrator.

The controller validates the model selection, maintains the session
transcript at the message-append checkpoints, runs the
:class:`~polychat.core.orchestrator.StreamOrchestrator` as a task, and
schedules the post-finalize background jobs (title generation, memory
extraction).  Background failures are logged and never surfaced.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from polychat.config import ChatSettings, ProviderConfig, parse_model_selection, preset_providers
from polychat.errors import ConfigurationError, TransportError
from polychat.events.bus import EventBus
from polychat.llm.client import ProviderClient
from polychat.memory.bank import MemoryBank, MemoryItem
from polychat.memory.extractor import extract_memories
from polychat.models import Message, Role, Session
from polychat.store.persistence import Persistence
from polychat.store.sessions import SessionStore
from polychat.types import ApiType, ChatEvent, EventType, StreamPhase

from .context import build_history
from .orchestrator import StreamOrchestrator, StreamResult

_logger = logging.getLogger(__name__)

TITLE_PROMPT = "用不超过10个字总结以下内容的主题，只输出标题本身，不要加引号或标点：\n{text}"
TITLE_TEMPERATURE = 0.3
TITLE_MAX_LENGTH = 20
TITLE_SOURCE_LIMIT = 200

MODELS_CACHE_TTL = 3600

# Pseudo provider id selecting a Workers AI embedding endpoint
WORKERS_AI_EMBEDDING = "workers_ai"
WORKERS_AI_EMBEDDING_MODEL = "workers-ai-embedding"


def clean_title(raw: str) -> str | None:
    """Strip quotes and 《》; reject empty or overlong titles."""
    title = raw.strip().replace('"', "").replace("《", "").replace("》", "")
    if not title or len(title) > TITLE_MAX_LENGTH:
        return None
    return title


class ChatController:
    """Programmatic entry point of the chat core.

    Parameters
    ----------
    settings:
        Runtime settings (model selection, retry, memory, throttle).
    persistence:
        Storage collaborator for sessions, providers and memories.
    client:
        Transport; built from ``settings.transport`` when omitted.
    event_bus:
        UI channel shared with the orchestrator.
    providers:
        Provider list; loaded from *persistence* (or presets) when omitted.
    """

    def __init__(
        self,
        settings: ChatSettings,
        persistence: Persistence,
        client: ProviderClient | None = None,
        event_bus: EventBus | None = None,
        providers: list[ProviderConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._persistence = persistence
        self._client = client or ProviderClient(settings.transport)
        self.event_bus = event_bus or EventBus()
        self._clock = clock

        if providers is None:
            providers = persistence.load_providers() or preset_providers()
        self.providers = providers
        self.store = SessionStore(persistence, incognito=settings.incognito)
        self.memory = MemoryBank(persistence.load_memories())
        self.orchestrator = StreamOrchestrator(
            self._client, self.store, settings, self.event_bus, clock=clock,
        )

        self._task: asyncio.Task[StreamResult] | None = None
        self._preparing = False
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def is_loading(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Provider lookup
    # ------------------------------------------------------------------

    def find_provider(self, provider_id: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def resolve_selection(self, selection: str) -> tuple[ProviderConfig, str]:
        """Map ``"<provider-id>|<model-id>"`` to a usable provider.

        Raises
        ------
        ConfigurationError
            Malformed id, unknown provider, or provider without a key.
        """
        provider_id, model_id = parse_model_selection(selection)
        provider = self.find_provider(provider_id)
        if provider is None:
            raise ConfigurationError("⚠️ 找不到供应商配置")
        if not provider.api_key:
            raise ConfigurationError(f"⚠️ {provider.name} 未配置 API Key")
        return provider, model_id

    def embedding_target(self) -> tuple[ProviderConfig, str] | None:
        if self.settings.embedding_provider_id == WORKERS_AI_EMBEDDING:
            url = self.settings.workers_ai_embedding_url.strip()
            if not url:
                return None
            config = ProviderConfig(
                name="Workers AI", base_url=url, api_keys=["none"], api_type=ApiType.WORKERS_AI,
            )
            return config, WORKERS_AI_EMBEDDING_MODEL

        if not self.settings.embedding_provider_id or not self.settings.embedding_model_id:
            return None
        provider = self.find_provider(self.settings.embedding_provider_id)
        if provider is None or not provider.api_key:
            return None
        return provider, self.settings.embedding_model_id

    def save_providers(self) -> None:
        if not self.settings.incognito:
            self._persistence.save_providers(self.providers)

    async def refresh_models(self, provider_id: str, force: bool = False) -> bool:
        """Refresh a provider's model list; rotate its key on failure."""
        provider = self.find_provider(provider_id)
        if provider is None or not provider.api_key:
            return False
        if (
            not force
            and provider.available_models
            and provider.models_last_fetched is not None
            and self._clock() - provider.models_last_fetched < MODELS_CACHE_TTL
        ):
            return True
        try:
            models = await self._client.fetch_models(provider)
        except TransportError as exc:
            _logger.warning("Model refresh failed for %s: %s", provider.name, exc)
            provider.is_validated = False
            provider.rotate_key()
            self.save_providers()
            return False
        provider.available_models = models
        provider.is_validated = True
        provider.models_last_fetched = self._clock()
        self.save_providers()
        return True

    # ------------------------------------------------------------------
    # Send / regenerate / edit / stop
    # ------------------------------------------------------------------

    async def send_message(self, text: str, image: bytes | None = None) -> StreamResult | None:
        """Append a user message and stream the reply.

        Configuration errors become a synthetic assistant notice and no
        request is made.
        """
        if not text and image is None:
            return None
        if self.is_loading:
            _logger.warning("send_message ignored: a stream is already running")
            return None
        try:
            provider, model_id = self.resolve_selection(self.settings.selected_model_id)
        except ConfigurationError as exc:
            await self._append_notice(str(exc))
            return None

        provider.last_used_model_id = model_id
        self.save_providers()

        session = self.store.current
        now = self._clock()
        self.store.append(session, Message(role=Role.USER, text=text, image_bytes=image, send_time=now))
        self.store.save()
        placeholder = Message(role=Role.ASSISTANT, send_time=now)
        self.store.append(session, placeholder)
        return await self._stream(session, placeholder, provider, model_id)

    async def regenerate_last(self) -> StreamResult | None:
        """Drop trailing assistant replies and answer the last user message again."""
        if self.is_loading:
            return None
        session = self.store.current
        messages = list(session.messages)
        while messages and messages[-1].role == Role.ASSISTANT:
            messages.pop()
        if not messages or messages[-1].role != Role.USER:
            return None
        try:
            provider, model_id = self.resolve_selection(self.settings.selected_model_id)
        except ConfigurationError as exc:
            _logger.warning("Regenerate skipped: %s", exc)
            return None

        self.store.set_messages(session, messages)
        self.store.save()
        placeholder = Message(role=Role.ASSISTANT, send_time=self._clock())
        self.store.append(session, placeholder)
        return await self._stream(session, placeholder, provider, model_id)

    async def submit_edit(self, message_id: str, text: str) -> StreamResult | None:
        """Rewrite a message, truncate everything after it, and regenerate."""
        if not text.strip():
            return None
        if self.is_loading:
            await self.stop()
        session = self.store.current
        index = session.index_of(message_id)
        if index is None:
            return None

        messages = session.messages[:index + 1]
        messages[index].text = text
        self.store.set_messages(session, messages)
        self.store.save()

        try:
            provider, model_id = self.resolve_selection(self.settings.selected_model_id)
        except ConfigurationError as exc:
            _logger.warning("Edit saved without regenerating: %s", exc)
            return None

        placeholder = Message(role=Role.ASSISTANT, send_time=self._clock())
        self.store.append(session, placeholder)
        self.store.save()
        return await self._stream(session, placeholder, provider, model_id)

    async def stop(self) -> None:
        """Cancel the in-flight stream and wait for it to settle."""
        task = self._task
        if task is None or task.done():
            return
        self.orchestrator.cancel()
        # A task that has not started yet sees the flag when its run begins
        if self._preparing or self.orchestrator.is_running:
            task.cancel()
        await task

    def new_session(self) -> Session:
        return self.store.new_session()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _append_notice(self, text: str) -> None:
        session = self.store.current
        self.store.append(session, Message(role=Role.ASSISTANT, text=text))
        self.store.save()
        await self._emit(EventType.SESSION_UPDATED, {"session_id": session.id, "notice": text})

    async def _stream(
        self,
        session: Session,
        placeholder: Message,
        provider: ProviderConfig,
        model_id: str,
    ) -> StreamResult | None:
        # Created before any await so is_loading and stop() cover the memory lookup
        self._task = asyncio.create_task(
            self._prepare_and_run(session, placeholder, provider, model_id)
        )
        try:
            result = await self._task
        finally:
            self._task = None

        await self._emit(EventType.SESSION_UPDATED, {
            "session_id": session.id,
            "phase": result.phase,
        })
        if result.phase == StreamPhase.FINALIZING:
            self._schedule_background_jobs(session)
        return result

    async def _prepare_and_run(
        self,
        session: Session,
        placeholder: Message,
        provider: ProviderConfig,
        model_id: str,
    ) -> StreamResult:
        self._preparing = True
        try:
            memories = await self._context_memories(session)
        except asyncio.CancelledError:
            # Stopped before the request opened; the orchestrator finishes it as cancelled
            self.orchestrator.cancel()
            memories = []
        finally:
            self._preparing = False
        history = build_history(session.messages, self.settings, model_id, memories)
        return await self.orchestrator.run(session, placeholder, history, model_id, provider)

    async def _context_memories(self, session: Session) -> list[MemoryItem]:
        if not self.settings.memory_enabled or not len(self.memory):
            return []
        query = ""
        for msg in reversed(session.messages):
            if msg.role == Role.USER:
                query = msg.text
                break

        target = self.embedding_target()
        if self.memory.has_embeddings and target is not None and query:
            config, model_id = target
            try:
                vector = await self._client.fetch_embedding(query, model_id, config)
            except Exception as exc:
                _logger.warning("Query embedding failed, using importance order: %s", exc)
            else:
                return self.memory.for_context(vector)
        return self.memory.for_context(None)

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    def _schedule_background_jobs(self, session: Session) -> None:
        if self.settings.memory_enabled:
            self._spawn("memory extraction", self._extract_memories(session))
        first = session.first_user_message()
        if first is not None and self.store.needs_title(session):
            self._spawn("title generation", self._generate_title(session.id, first.text))

    def _spawn(self, name: str, job: Awaitable[None]) -> None:
        task = asyncio.create_task(self._guarded(name, job))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guarded(name: str, job: Awaitable[None]) -> None:
        try:
            await job
        except Exception as exc:
            _logger.warning("Background %s failed: %s", name, exc)

    async def wait_background(self) -> None:
        """Wait for scheduled background jobs (used by tests and shutdown)."""
        while self._background:
            await asyncio.gather(*list(self._background))

    async def _generate_title(self, session_id: str, first_message: str) -> None:
        provider, model_id = self.resolve_selection(self.settings.background_model_id)
        prompt = TITLE_PROMPT.format(text=first_message[:TITLE_SOURCE_LIMIT])
        reply = await self._client.complete(
            [Message(role=Role.USER, text=prompt)], model_id, provider, TITLE_TEMPERATURE,
        )
        title = clean_title(reply)
        if title is None:
            _logger.info("Generated title rejected: %r", reply[:50])
            return
        if self.store.apply_generated_title(session_id, title):
            _logger.info("Session titled: %s", title)
            await self._emit(EventType.SESSION_TITLED, {"session_id": session_id, "title": title})

    async def _extract_memories(self, session: Session) -> None:
        provider, model_id = self.resolve_selection(self.settings.background_model_id)

        async def complete(prompt: str, temperature: float) -> str:
            return await self._client.complete(
                [Message(role=Role.USER, text=prompt)], model_id, provider, temperature,
            )

        embed: Callable[[str], Awaitable[list[float]]] | None = None
        target = self.embedding_target()
        if target is not None:
            config, embedding_model = target

            async def _embed(text: str) -> list[float]:
                return await self._client.fetch_embedding(text, embedding_model, config)

            embed = _embed

        added = await extract_memories(
            list(session.messages), complete, self.memory, embed, source=session.title,
        )
        if added:
            if not self.settings.incognito:
                self._persistence.save_memories(self.memory.items)
            await self._emit(EventType.MEMORY_EXTRACTED, {"count": added, "total": len(self.memory)})

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self.event_bus.emit(ChatEvent(type=event_type, data=data))
