"""Tests for ChatController: send, regenerate, edit, stop and background jobs."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from polychat.config import ChatSettings, ProviderConfig
from polychat.core.chat import ChatController, clean_title
from polychat.core.context import MEMORY_HEADER
from polychat.errors import EmbeddingError, TransportError
from polychat.models import ModelInfo, Role
from polychat.store.persistence import InMemoryPersistence
from polychat.types import ApiType, EventType, StreamPhase


def _content(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


class FakeClient:
    """Scripted stand-in for ProviderClient.

    ``streams`` holds one list of items per stream: strings become content
    deltas and ``asyncio.Event`` objects are awaited.  ``completions``
    maps a temperature to the reply returned by :meth:`complete`.
    """

    def __init__(self, streams=None, completions=None) -> None:
        self.streams = list(streams or [])
        self.completions = dict(completions or {})
        self.requests = []
        self.complete_calls = []
        self.models: list[ModelInfo] | Exception = []
        self.fetch_models_calls = 0

    async def stream_lines(self, request, on_open=None):
        self.requests.append(request)
        script = self.streams.pop(0) if self.streams else ["ok"]
        if on_open is not None:
            on_open()
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
            else:
                yield _content(item)

    async def complete(self, messages, model_id, config, temperature=0.7):
        self.complete_calls.append((messages[0].text, model_id, temperature))
        return self.completions.get(temperature, "无")

    async def fetch_embedding(self, text, model_id, config, dimensions=None):
        return [1.0, 0.0]

    async def fetch_models(self, config):
        self.fetch_models_calls += 1
        if isinstance(self.models, Exception):
            raise self.models
        return self.models

    async def close(self):
        pass


def _provider(**kwargs) -> ProviderConfig:
    defaults = dict(
        id="p1", name="test", base_url="https://api.example.com/v1",
        api_keys=["sk"], api_type=ApiType.OPENAI,
    )
    defaults.update(kwargs)
    return ProviderConfig(**defaults)


def _controller(client: FakeClient, settings: ChatSettings | None = None, providers=None):
    settings = settings or ChatSettings(selected_model_id="p1|gpt-4o")
    persistence = InMemoryPersistence()
    controller = ChatController(
        settings, persistence, client=client,
        providers=providers if providers is not None else [_provider()],
        clock=lambda: 1000.0,
    )
    return controller, persistence


def _texts(controller: ChatController) -> list[tuple[Role, str]]:
    return [(m.role, m.text) for m in controller.store.current.messages]


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------

class TestConfigurationNotices:
    @pytest.mark.parametrize("selection, providers, notice", [
        ("", [], "⚠️ 请先在设置中选择一个模型"),
        ("missing|gpt-4o", [], "⚠️ 找不到供应商配置"),
        ("p1|gpt-4o", [_provider(api_keys=[])], "⚠️ test 未配置 API Key"),
    ])
    async def test_notice_instead_of_request(self, selection, providers, notice):
        client = FakeClient()
        controller, _ = _controller(client, ChatSettings(selected_model_id=selection), providers)

        result = await controller.send_message("hello")

        assert result is None
        assert client.requests == []
        assert _texts(controller) == [(Role.ASSISTANT, notice)]
        updated = controller.event_bus.events_of(EventType.SESSION_UPDATED)
        assert updated[-1].data["notice"] == notice

    async def test_empty_input_ignored(self):
        controller, _ = _controller(FakeClient())
        assert await controller.send_message("") is None
        assert controller.store.current.messages == []


# ---------------------------------------------------------------------------
# Send / regenerate / edit
# ---------------------------------------------------------------------------

class TestSend:
    async def test_send_streams_reply(self):
        client = FakeClient(streams=[["Hel", "lo!"]])
        controller, persistence = _controller(client)

        result = await controller.send_message("hi there")
        await controller.wait_background()

        assert result.phase == StreamPhase.FINALIZING
        assert _texts(controller) == [(Role.USER, "hi there"), (Role.ASSISTANT, "Hello!")]
        user, reply = controller.store.current.messages
        assert user.send_time == 1000.0
        assert reply.complete_time == 1000.0
        assert controller.providers[0].last_used_model_id == "gpt-4o"
        assert not controller.is_loading
        assert persistence.load_sessions()[0].messages[1].text == "Hello!"

        body = client.requests[0].body
        assert body["messages"][0]["role"] == "system"
        assert body["messages"][1:] == [{"role": "user", "content": "hi there"}]

    async def test_regenerate_replaces_reply(self):
        client = FakeClient(streams=[["first"], ["second"]])
        controller, _ = _controller(client)
        await controller.send_message("question")

        result = await controller.regenerate_last()
        await controller.wait_background()

        assert result.phase == StreamPhase.FINALIZING
        assert _texts(controller) == [(Role.USER, "question"), (Role.ASSISTANT, "second")]
        assert client.requests[1].body["messages"][1:] == [{"role": "user", "content": "question"}]

    async def test_regenerate_without_user_message(self):
        controller, _ = _controller(FakeClient())
        assert await controller.regenerate_last() is None

    async def test_submit_edit_truncates_and_regenerates(self):
        client = FakeClient(streams=[["a1"], ["a2"], ["edited answer"]])
        controller, _ = _controller(client)
        await controller.send_message("q1")
        await controller.send_message("q2")
        first_id = controller.store.current.messages[0].id

        await controller.submit_edit(first_id, "q1 revised")
        await controller.wait_background()

        assert _texts(controller) == [
            (Role.USER, "q1 revised"),
            (Role.ASSISTANT, "edited answer"),
        ]

    async def test_submit_edit_unknown_message(self):
        controller, _ = _controller(FakeClient())
        assert await controller.submit_edit("nope", "text") is None


class TestStop:
    async def test_stop_cancels_running_stream(self):
        blocker = asyncio.Event()
        client = FakeClient(streams=[["Partial", blocker]])
        controller, _ = _controller(client, ChatSettings(selected_model_id="p1|gpt-4o", memory_enabled=False))

        send = asyncio.create_task(controller.send_message("go"))
        while controller.orchestrator.phase != StreamPhase.STREAMING:
            await asyncio.sleep(0)
        await controller.stop()
        result = await send

        assert result.phase == StreamPhase.CANCELLED
        assert controller.store.current.messages[-1].text == "Partial\n[已停止]"
        assert client.complete_calls == []

    async def test_stop_when_idle_is_noop(self):
        controller, _ = _controller(FakeClient())
        await controller.stop()
        assert not controller.orchestrator.is_running


class TestSingleStream:
    """The memory lookup before a request already counts as a running stream."""

    def _gated(self, client: FakeClient):
        gate = asyncio.Event()
        embedded = []
        controller, _ = _controller(client, ChatSettings(
            selected_model_id="p1|gpt-4o",
            embedding_provider_id="p1",
            embedding_model_id="text-embedding-3-small",
        ))
        controller.memory.add("用户喜欢猫", embedding=[1.0, 0.0])

        async def fetch_embedding(text, model_id, config, dimensions=None):
            embedded.append(text)
            await gate.wait()
            return [1.0, 0.0]

        return controller, gate, embedded, fetch_embedding

    async def test_second_send_ignored_while_looking_up_memories(self):
        client = FakeClient(streams=[["AAAA", "aaaa"], ["BBBB", "bbbb"]])
        controller, gate, embedded, fetch_embedding = self._gated(client)

        with patch.object(client, "fetch_embedding", fetch_embedding):
            first = asyncio.create_task(controller.send_message("a"))
            while not embedded:
                await asyncio.sleep(0)
            assert controller.is_loading
            assert await controller.send_message("b") is None

            gate.set()
            result = await first
            await controller.wait_background()

        assert result.phase == StreamPhase.FINALIZING
        assert len(client.requests) == 1
        assert _texts(controller) == [(Role.USER, "a"), (Role.ASSISTANT, "AAAAaaaa")]

    async def test_stop_while_looking_up_memories(self):
        client = FakeClient(streams=[["never"]])
        controller, gate, embedded, fetch_embedding = self._gated(client)

        with patch.object(client, "fetch_embedding", fetch_embedding):
            send = asyncio.create_task(controller.send_message("go"))
            while not embedded:
                await asyncio.sleep(0)
            await controller.stop()
            result = await send

        assert result.phase == StreamPhase.CANCELLED
        assert client.requests == []
        assert controller.store.current.messages[-1].text == ""
        assert not controller.is_loading
        assert not controller.orchestrator.is_running
        assert client.complete_calls == []


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------

class TestTitleJob:
    async def test_generated_title_applied(self):
        client = FakeClient(completions={0.3: "《旅行计划》"})
        controller, _ = _controller(client, ChatSettings(selected_model_id="p1|gpt-4o", memory_enabled=False))

        await controller.send_message("帮我规划一次去日本的旅行，大概七天左右")
        await controller.wait_background()

        session = controller.store.current
        assert session.title == "旅行计划"
        assert session.title_final
        titled = controller.event_bus.events_of(EventType.SESSION_TITLED)
        assert titled[0].data["title"] == "旅行计划"

    async def test_title_generated_once(self):
        client = FakeClient(completions={0.3: "标题"})
        controller, _ = _controller(client, ChatSettings(selected_model_id="p1|gpt-4o", memory_enabled=False))
        await controller.send_message("one")
        await controller.wait_background()
        await controller.send_message("two")
        await controller.wait_background()

        title_calls = [c for c in client.complete_calls if c[2] == 0.3]
        assert len(title_calls) == 1

    async def test_overlong_title_rejected(self):
        client = FakeClient(completions={0.3: "这是一个非常非常非常非常非常非常长的标题啊"})
        controller, _ = _controller(client, ChatSettings(selected_model_id="p1|gpt-4o", memory_enabled=False))
        await controller.send_message("hello")
        await controller.wait_background()
        assert controller.store.current.title == "hello"

    async def test_helper_model_used(self):
        client = FakeClient(completions={0.3: "标题"})
        settings = ChatSettings(
            selected_model_id="p1|gpt-4o", helper_model_id="p1|gpt-4o-mini", memory_enabled=False,
        )
        controller, _ = _controller(client, settings)
        await controller.send_message("hello")
        await controller.wait_background()
        assert client.complete_calls[0][1] == "gpt-4o-mini"


class TestMemoryJob:
    async def test_memories_extracted_and_injected(self):
        client = FakeClient(completions={0.05: "[长期] 用户是学生", 0.3: "标题"})
        controller, persistence = _controller(client)

        await controller.send_message("我是一名学生")
        await controller.wait_background()

        assert [m.content for m in controller.memory.items] == ["用户是学生"]
        assert [m.content for m in persistence.load_memories()] == ["用户是学生"]
        extracted = controller.event_bus.events_of(EventType.MEMORY_EXTRACTED)
        assert extracted[0].data["count"] == 1

        await controller.send_message("再问一个问题")
        await controller.wait_background()
        system = client.requests[1].body["messages"][0]["content"]
        assert MEMORY_HEADER in system
        assert "- 用户是学生" in system

    async def test_query_embedding_failure_falls_back(self):
        client = FakeClient()
        settings = ChatSettings(
            selected_model_id="p1|gpt-4o",
            embedding_provider_id="p1",
            embedding_model_id="text-embedding-3-small",
        )
        controller, _ = _controller(client, settings)
        controller.memory.add("用户喜欢猫", embedding=[1.0, 0.0])

        failing = AsyncMock(side_effect=EmbeddingError("down"))
        with patch.object(client, "fetch_embedding", failing):
            result = await controller.send_message("推荐一部电影")
            await controller.wait_background()

        assert result.phase == StreamPhase.FINALIZING
        failing.assert_any_await("推荐一部电影", "text-embedding-3-small", controller.providers[0])
        assert "- 用户喜欢猫" in client.requests[0].body["messages"][0]["content"]

    async def test_incognito_memories_not_persisted(self):
        client = FakeClient(completions={0.05: "[长期] 用户是学生"})
        settings = ChatSettings(selected_model_id="p1|gpt-4o", incognito=True)
        controller, persistence = _controller(client, settings)

        await controller.send_message("我是一名学生")
        await controller.wait_background()

        assert len(controller.memory) == 1
        assert persistence.load_memories() == []
        assert persistence.save_count == 0

    async def test_failed_stream_skips_jobs(self):
        class FailingClient(FakeClient):
            async def stream_lines(self, request, on_open=None):
                raise TransportError("HTTP 500: down")
                yield  # pragma: no cover

        client = FailingClient(completions={0.3: "标题"})
        controller, _ = _controller(client)
        result = await controller.send_message("hello")
        await controller.wait_background()

        assert result.phase == StreamPhase.FAILED
        assert client.complete_calls == []


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class TestProviders:
    async def test_refresh_uses_cache(self):
        client = FakeClient()
        client.models = [ModelInfo(id="gpt-4o")]
        provider = _provider(available_models=[ModelInfo(id="old")], models_last_fetched=999.0)
        controller, _ = _controller(client, providers=[provider])

        assert await controller.refresh_models("p1") is True
        assert client.fetch_models_calls == 0
        assert await controller.refresh_models("p1", force=True) is True
        assert [m.id for m in provider.available_models] == ["gpt-4o"]
        assert provider.is_validated

    async def test_refresh_failure_rotates_key(self):
        client = FakeClient()
        client.models = TransportError("HTTP 401: bad key", status_code=401)
        provider = _provider(api_keys=["k1", "k2"])
        controller, persistence = _controller(client, providers=[provider])

        assert await controller.refresh_models("p1") is False
        assert provider.api_key == "k2"
        assert not provider.is_validated
        assert persistence.load_providers()[0].current_key_index == 1

    def test_embedding_target_workers_ai(self):
        settings = ChatSettings(
            embedding_provider_id="workers_ai", workers_ai_embedding_url="embed.example.com",
        )
        controller, _ = _controller(FakeClient(), settings)
        config, model = controller.embedding_target()
        assert config.api_type == ApiType.WORKERS_AI
        assert model == "workers-ai-embedding"

    def test_embedding_target_requires_key(self):
        settings = ChatSettings(embedding_provider_id="p1", embedding_model_id="text-embedding-3-small")
        controller, _ = _controller(FakeClient(), settings, providers=[_provider(api_keys=[])])
        assert controller.embedding_target() is None


class TestCleanTitle:
    @pytest.mark.parametrize("raw, expected", [
        ('"Hello"', "Hello"),
        ("《书名》", "书名"),
        ("  ", None),
        ("x" * 21, None),
    ])
    def test_clean(self, raw, expected):
        assert clean_title(raw) == expected
