"""Tests for the vendor wire-protocol adapters."""

from __future__ import annotations

import base64
import json

import pytest

from polychat.config import ProviderConfig
from polychat.llm.adapters import (
    AnthropicAdapter,
    GeminiAdapter,
    OpenAIChatAdapter,
    OpenAIResponsesAdapter,
    build_headers,
    build_url,
    create_adapter,
)
from polychat.models import Message, Role
from polychat.stream.tags import split_think_tags
from polychat.types import ApiType


def _config(api_type: ApiType, base_url: str = "https://api.example.com/v1") -> ProviderConfig:
    return ProviderConfig(name="test", base_url=base_url, api_keys=["sk-test"], api_type=api_type)


def _data(payload: dict) -> str:
    return "data: " + json.dumps(payload, ensure_ascii=False)


def _run(adapter, lines: list[str]) -> str:
    out = []
    for line in lines:
        delta = adapter.parse_line(line)
        if delta:
            out.append(delta)
    return "".join(out)


# ---------------------------------------------------------------------------
# URL / header building
# ---------------------------------------------------------------------------

class TestBuildUrl:
    def test_trailing_slash_stripped(self):
        assert build_url("https://api.x.com/v1/", "chat/completions", ApiType.OPENAI) == \
            "https://api.x.com/v1/chat/completions"

    def test_gemini_adds_version(self):
        assert build_url("https://generativelanguage.googleapis.com", "models", ApiType.GEMINI) == \
            "https://generativelanguage.googleapis.com/v1beta/models"

    def test_gemini_keeps_existing_version(self):
        url = build_url("https://generativelanguage.googleapis.com/v1beta", "models", ApiType.GEMINI)
        assert url.count("v1beta") == 1

    def test_anthropic_adds_v1(self):
        assert build_url("https://api.anthropic.com", "messages", ApiType.ANTHROPIC) == \
            "https://api.anthropic.com/v1/messages"


class TestBuildHeaders:
    def test_bearer_for_openai(self):
        headers = build_headers(_config(ApiType.OPENAI))
        assert headers["Authorization"] == "Bearer sk-test"
        assert headers["Content-Type"] == "application/json"

    def test_gemini_key_header(self):
        headers = build_headers(_config(ApiType.GEMINI))
        assert headers["x-goog-api-key"] == "sk-test"
        assert "Authorization" not in headers

    def test_anthropic_headers(self):
        headers = build_headers(_config(ApiType.ANTHROPIC))
        assert headers["x-api-key"] == "sk-test"
        assert headers["anthropic-version"] == "2023-06-01"

    def test_workers_ai_has_no_auth(self):
        headers = build_headers(_config(ApiType.WORKERS_AI))
        assert "Authorization" not in headers
        assert "x-api-key" not in headers


class TestCreateAdapter:
    @pytest.mark.parametrize("api_type, cls", [
        (ApiType.OPENAI, OpenAIChatAdapter),
        (ApiType.WORKERS_AI, OpenAIChatAdapter),
        (ApiType.GEMINI, GeminiAdapter),
        (ApiType.ANTHROPIC, AnthropicAdapter),
        (ApiType.OPENAI_RESPONSES, OpenAIResponsesAdapter),
    ])
    def test_dispatch(self, api_type, cls):
        assert isinstance(create_adapter(api_type), cls)

    def test_fresh_instance_per_call(self):
        assert create_adapter(ApiType.OPENAI) is not create_adapter(ApiType.OPENAI)


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------

class TestOpenAIChat:
    def test_content_delta(self):
        adapter = OpenAIChatAdapter()
        assert adapter.parse_line('data: {"choices":[{"delta":{"content":"Hi"}}]}') == "Hi"

    def test_done_returns_none(self):
        assert OpenAIChatAdapter().parse_line("data: [DONE]") is None

    def test_non_data_line_is_raw(self):
        adapter = OpenAIChatAdapter()
        assert adapter.parse_line(": keep-alive") == "[RAW] : keep-alive"
        assert adapter.parse_line("") is None
        assert adapter.parse_line("   ") is None

    def test_reasoning_wrapped_in_think_tags(self):
        adapter = OpenAIChatAdapter()
        raw = _run(adapter, [
            _data({"choices": [{"delta": {"reasoning_content": "let me "}}]}),
            _data({"choices": [{"delta": {"reasoning_content": "see"}}]}),
            _data({"choices": [{"delta": {"content": "Answer"}}]}),
            _data({"choices": [{"delta": {"content": "!"}}]}),
        ])
        assert raw == "<think>\nlet me see\n</think>\nAnswer!"
        answer, thinking = split_think_tags(raw)
        assert answer.strip() == "Answer!"
        assert thinking.strip() == "let me see"

    def test_api_error(self):
        line = _data({"error": {"message": "quota exceeded"}})
        assert OpenAIChatAdapter().parse_line(line) == "❌ API错误: quota exceeded"

    def test_unknown_json_is_debug(self):
        line = 'data: {"object":"ping"}'
        assert OpenAIChatAdapter().parse_line(line) == '[DEBUG] {"object":"ping"}'

    def test_broken_json_is_parse_fail(self):
        assert OpenAIChatAdapter().parse_line("data: {oops") == "[PARSE_FAIL] {oops"

    def test_empty_choices_yield_nothing(self):
        assert OpenAIChatAdapter().parse_line('data: {"choices":[]}') is None

    def test_build_request_inlines_image(self):
        messages = [
            Message(role=Role.SYSTEM, text="be nice"),
            Message(role=Role.USER, text="what is this", image_bytes=b"\xff\xd8jpeg"),
        ]
        req = OpenAIChatAdapter().build_request(messages, "gpt-4o", _config(ApiType.OPENAI), 0.5)
        assert req.url == "https://api.example.com/v1/chat/completions"
        assert req.body["stream"] is True
        assert req.body["temperature"] == 0.5
        assert req.body["messages"][0] == {"role": "system", "content": "be nice"}
        parts = req.body["messages"][1]["content"]
        assert parts[0] == {"type": "text", "text": "what is this"}
        encoded = base64.b64encode(b"\xff\xd8jpeg").decode()
        assert parts[1]["image_url"]["url"] == f"data:image/jpeg;base64,{encoded}"


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class TestGemini:
    def test_build_request(self):
        messages = [
            Message(role=Role.USER, text="hi", image_bytes=b"img"),
            Message(role=Role.ASSISTANT, text="hello"),
            Message(role=Role.SYSTEM, text=""),
        ]
        config = _config(ApiType.GEMINI, "https://generativelanguage.googleapis.com")
        req = GeminiAdapter().build_request(messages, "gemini-2.0-flash", config, 0.7)
        assert req.url == (
            "https://generativelanguage.googleapis.com/v1beta/"
            "models/gemini-2.0-flash:streamGenerateContent?alt=sse"
        )
        contents = req.body["contents"]
        assert [c["role"] for c in contents] == ["user", "model", "model"]
        assert contents[0]["parts"][0]["inline_data"]["mime_type"] == "image/jpeg"
        assert contents[0]["parts"][1] == {"text": "hi"}
        assert contents[2]["parts"] == []
        assert req.body["generationConfig"] == {"temperature": 0.7}
        assert len(req.body["safetySettings"]) == 4
        assert all(s["threshold"] == "BLOCK_NONE" for s in req.body["safetySettings"])

    def test_thought_rewritten_to_think(self):
        line = _data({"candidates": [{"content": {"parts": [{"text": "<thought>hmm</thought>ok"}]}}]})
        assert GeminiAdapter().parse_line(line) == "<think>hmm</think>ok"

    def test_error_and_debug(self):
        adapter = GeminiAdapter()
        assert adapter.parse_line(_data({"error": {"message": "bad key"}})) == "❌ API错误: bad key"
        assert adapter.parse_line('data: {"usageMetadata":{}}').startswith("[DEBUG] ")
        assert adapter.parse_line("data: nope").startswith("[PARSE_FAIL] ")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class TestAnthropic:
    def test_system_messages_merged(self):
        messages = [
            Message(role=Role.SYSTEM, text="A"),
            Message(role=Role.USER, text="B"),
            Message(role=Role.SYSTEM, text="C"),
        ]
        req = AnthropicAdapter().build_request(
            messages, "claude-3-5-sonnet-20241022", _config(ApiType.ANTHROPIC, "https://api.anthropic.com"), 0.7,
        )
        assert req.url == "https://api.anthropic.com/v1/messages"
        assert req.body["system"] == "A\nC"
        assert req.body["messages"] == [{"role": "user", "content": "B"}]
        assert req.body["max_tokens"] == 4096

    def test_no_system_field_when_empty(self):
        req = AnthropicAdapter().build_request(
            [Message(role=Role.USER, text="hi")], "claude", _config(ApiType.ANTHROPIC), 0.7,
        )
        assert "system" not in req.body

    def test_image_block_precedes_text(self):
        req = AnthropicAdapter().build_request(
            [Message(role=Role.USER, text="look", image_bytes=b"png")], "claude",
            _config(ApiType.ANTHROPIC), 0.7,
        )
        content = req.body["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/jpeg"
        assert content[1] == {"type": "text", "text": "look"}

    def test_stream_events(self):
        adapter = AnthropicAdapter()
        raw = _run(adapter, [
            "event: message_start",
            _data({"type": "message_start", "message": {}}),
            "",
            "event: content_block_delta",
            _data({"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "plan"}}),
            _data({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Done"}}),
            _data({"type": "message_delta", "delta": {"stop_reason": "end_turn"}}),
            _data({"type": "message_stop"}),
        ])
        assert split_think_tags(raw) == ("\nDone", "\nplan\n")
        assert "🧠" not in raw

    def test_error_event(self):
        line = _data({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        assert AnthropicAdapter().parse_line(line) == "❌ API错误: Overloaded"


# ---------------------------------------------------------------------------
# OpenAI Responses
# ---------------------------------------------------------------------------

class TestResponses:
    def test_build_request_uses_input(self):
        messages = [
            Message(role=Role.USER, text="describe", image_bytes=b"x"),
            Message(role=Role.ASSISTANT, text="ok"),
        ]
        req = OpenAIResponsesAdapter().build_request(
            messages, "gpt-4.1", _config(ApiType.OPENAI_RESPONSES), 0.7,
        )
        assert req.url == "https://api.example.com/v1/responses"
        assert "messages" not in req.body
        first = req.body["input"][0]
        assert first["content"][0] == {"type": "input_text", "text": "describe"}
        assert first["content"][1]["type"] == "input_image"
        assert req.body["input"][1] == {"role": "assistant", "content": "ok"}

    def test_typed_events(self):
        adapter = OpenAIResponsesAdapter()
        raw = _run(adapter, [
            _data({"type": "response.created", "response": {}}),
            _data({"type": "response.reasoning.delta", "delta": "why"}),
            _data({"type": "response.output_text.delta", "delta": "Because"}),
            _data({"type": "response.completed", "response": {}}),
            "data: [DONE]",
        ])
        answer, thinking = split_think_tags(raw)
        assert answer.strip() == "Because"
        assert thinking.strip() == "why"

    def test_chat_chunk_fallback(self):
        line = _data({"choices": [{"delta": {"content": "legacy"}}]})
        assert OpenAIResponsesAdapter().parse_line(line) == "legacy"

    def test_non_data_line_is_raw(self):
        assert OpenAIResponsesAdapter().parse_line("event: response.created") == \
            "[RAW] event: response.created"
