"""Vendor wire-protocol adapters.

Each adapter builds a vendor-specific HTTP request and parses one line
of that vendor's SSE stream into a plain-text delta (or ``None``).
Deltas form the raw stream consumed by
:class:`polychat.stream.tags.ThinkTagSplitter`, so every adapter
normalizes its vendor's reasoning signal into ``<think>``/``</think>``.

Adapters are per-stream objects: some track whether a reasoning span is
open.  Create a fresh one per attempt with :func:`create_adapter`.

Parse policy: adapters never raise.  Vendor-reported errors become a
visible ``❌ API错误: `` delta; unrecognized lines become ``[RAW]``,
``[DEBUG]`` or ``[PARSE_FAIL]`` diagnostics where the vendor's stream
shape allows it.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Protocol

from polychat.config import ProviderConfig
from polychat.models import Message, Role
from polychat.stream.tags import CLOSE_TAG, OPEN_TAG
from polychat.types import ApiType, HttpRequest

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
EVENT_PREFIX = "event: "
DONE_SENTINEL = "[DONE]"

API_ERROR_PREFIX = "❌ API错误: "
RAW_PREFIX = "[RAW] "
DEBUG_PREFIX = "[DEBUG] "
PARSE_FAIL_PREFIX = "[PARSE_FAIL] "

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 4096

GEMINI_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


# ---------------------------------------------------------------------------
# Adapter protocol
# ---------------------------------------------------------------------------

class VendorAdapter(Protocol):
    """Interface every wire-protocol variant implements."""

    def build_request(
        self,
        messages: list[Message],
        model_id: str,
        config: ProviderConfig,
        temperature: float,
    ) -> HttpRequest:
        """Build the streaming request for *messages*."""
        ...

    def parse_line(self, line: str) -> str | None:
        """Translate one SSE line into a raw text delta, or ``None``."""
        ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def build_url(base_url: str, path: str, api_type: ApiType) -> str:
    """Join *base_url* and *path* following each vendor's version prefix."""
    base = base_url.strip().rstrip("/")
    if api_type == ApiType.GEMINI and "/v1beta" not in base:
        base = f"{base}/v1beta"
    elif api_type == ApiType.ANTHROPIC and "/v1" not in base:
        base = f"{base}/v1"
    return f"{base}/{path}"


def build_headers(config: ProviderConfig) -> dict[str, str]:
    """Common headers plus the vendor's auth scheme."""
    headers = {
        "Content-Type": "application/json",
        "Accept": "*/*",
    }
    if config.api_type in (ApiType.OPENAI, ApiType.OPENAI_RESPONSES):
        headers["Authorization"] = f"Bearer {config.api_key}"
    elif config.api_type == ApiType.GEMINI:
        headers["x-goog-api-key"] = config.api_key
    elif config.api_type == ApiType.ANTHROPIC:
        headers["x-api-key"] = config.api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
    # Workers AI: no auth
    return headers


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _data_url(data: bytes) -> str:
    return f"data:image/jpeg;base64,{_b64(data)}"


def _load_json(payload: str) -> Any:
    try:
        return json.loads(payload)
    except (json.JSONDecodeError, ValueError):
        return None


def api_error_delta(data: dict[str, Any]) -> str | None:
    """Return the visible error delta when *data* carries ``error.message``."""
    error = data.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return API_ERROR_PREFIX + error["message"]
    return None


class _ReasoningSpan:
    """Wrap vendor reasoning deltas in ``<think>`` markers.

    Opens the span on the first reasoning delta and closes it when
    ordinary content resumes.
    """

    def __init__(self) -> None:
        self.open = False

    def reasoning(self, text: str) -> str:
        if self.open:
            return text
        self.open = True
        return f"{OPEN_TAG}\n{text}"

    def content(self, text: str) -> str:
        if not self.open:
            return text
        self.open = False
        return f"\n{CLOSE_TAG}\n{text}"


def _non_data_line(vendor: str, line: str) -> str | None:
    if line.strip():
        _logger.warning("%s non-standard line: %s", vendor, line[:200])
        return RAW_PREFIX + line
    return None


# ---------------------------------------------------------------------------
# OpenAI-compatible (also Workers AI)
# ---------------------------------------------------------------------------

class OpenAIChatAdapter:
    """``POST /chat/completions`` with ``choices[0].delta`` streaming."""

    def __init__(self) -> None:
        self._span = _ReasoningSpan()

    def build_request(
        self,
        messages: list[Message],
        model_id: str,
        config: ProviderConfig,
        temperature: float,
    ) -> HttpRequest:
        wire: list[dict[str, Any]] = []
        for msg in messages:
            content: Any = msg.text
            if msg.image_bytes:
                content = [
                    {"type": "text", "text": msg.text},
                    {"type": "image_url", "image_url": {"url": _data_url(msg.image_bytes)}},
                ]
            wire.append({"role": msg.role.value, "content": content})
        return HttpRequest(
            url=build_url(config.base_url, "chat/completions", config.api_type),
            headers=build_headers(config),
            body={
                "model": model_id,
                "messages": wire,
                "stream": True,
                "temperature": temperature,
            },
        )

    def parse_line(self, line: str) -> str | None:
        if not line.startswith(DATA_PREFIX):
            return _non_data_line("OpenAI", line)
        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_SENTINEL:
            return None

        data = _load_json(payload)
        if isinstance(data, dict):
            delta = self._standard_delta(data)
            if delta is not None:
                return self._from_delta(delta)
            error = api_error_delta(data)
            if error is not None:
                return error
            _logger.warning("OpenAI unknown payload: %s", payload[:200])
            return DEBUG_PREFIX + payload

        if payload.strip():
            _logger.warning("OpenAI parse failure: %s", payload[:200])
            return PARSE_FAIL_PREFIX + payload
        return None

    @staticmethod
    def _standard_delta(data: dict[str, Any]) -> dict[str, Any] | None:
        """Return ``choices[0].delta`` ({} when absent) if *data* is a stream chunk."""
        choices = data.get("choices")
        if not isinstance(choices, list):
            return None
        if not all(isinstance(c, dict) and isinstance(c.get("delta"), dict) for c in choices):
            return None
        return choices[0]["delta"] if choices else {}

    def _from_delta(self, delta: dict[str, Any]) -> str | None:
        reasoning = delta.get("reasoning_content")
        content = delta.get("content")
        if isinstance(reasoning, str) and reasoning:
            return self._span.reasoning(reasoning)
        if isinstance(content, str) and content:
            return self._span.content(content)
        return None


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiAdapter:
    """``models/{id}:streamGenerateContent?alt=sse``."""

    def build_request(
        self,
        messages: list[Message],
        model_id: str,
        config: ProviderConfig,
        temperature: float,
    ) -> HttpRequest:
        contents: list[dict[str, Any]] = []
        for msg in messages:
            parts: list[dict[str, Any]] = []
            if msg.image_bytes:
                parts.append({"inline_data": {"mime_type": "image/jpeg", "data": _b64(msg.image_bytes)}})
            if msg.text:
                parts.append({"text": msg.text})
            role = "user" if msg.role == Role.USER else "model"
            contents.append({"role": role, "parts": parts})

        path = f"models/{model_id}:streamGenerateContent?alt=sse"
        return HttpRequest(
            url=build_url(config.base_url, path, config.api_type),
            headers=build_headers(config),
            body={
                "contents": contents,
                "generationConfig": {"temperature": temperature},
                "safetySettings": [
                    {"category": cat, "threshold": "BLOCK_NONE"}
                    for cat in GEMINI_SAFETY_CATEGORIES
                ],
            },
        )

    def parse_line(self, line: str) -> str | None:
        if not line.startswith(DATA_PREFIX):
            return _non_data_line("Gemini", line)
        payload = line[len(DATA_PREFIX):]

        data = _load_json(payload)
        if isinstance(data, dict):
            error = api_error_delta(data)
            if error is not None:
                return error
            text = self._candidate_text(data)
            if text is not None:
                return text.replace("<thought>", OPEN_TAG).replace("</thought>", CLOSE_TAG)
            _logger.warning("Gemini unknown payload: %s", payload[:200])
            return DEBUG_PREFIX + payload

        if payload.strip():
            _logger.warning("Gemini parse failure: %s", payload[:200])
            return PARSE_FAIL_PREFIX + payload
        return None

    @staticmethod
    def _candidate_text(data: dict[str, Any]) -> str | None:
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None
        return text if isinstance(text, str) else None


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------

class AnthropicAdapter:
    """``POST /v1/messages`` with ``content_block_delta`` events."""

    def __init__(self) -> None:
        self._span = _ReasoningSpan()

    def build_request(
        self,
        messages: list[Message],
        model_id: str,
        config: ProviderConfig,
        temperature: float,
    ) -> HttpRequest:
        system_parts: list[str] = []
        wire: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                system_parts.append(msg.text)
                continue
            role = "user" if msg.role == Role.USER else "assistant"
            content: Any = msg.text
            if msg.image_bytes:
                content = [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": "image/jpeg",
                            "data": _b64(msg.image_bytes),
                        },
                    },
                    {"type": "text", "text": msg.text},
                ]
            wire.append({"role": role, "content": content})

        body: dict[str, Any] = {
            "model": model_id,
            "messages": wire,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "stream": True,
            "temperature": temperature,
        }
        system = "\n".join(system_parts)
        if system:
            body["system"] = system
        return HttpRequest(
            url=build_url(config.base_url, "messages", config.api_type),
            headers=build_headers(config),
            body=body,
        )

    def parse_line(self, line: str) -> str | None:
        if not line.startswith(DATA_PREFIX):
            if not line.startswith(EVENT_PREFIX) and line.strip():
                _logger.warning("Anthropic non-standard line: %s", line[:200])
            return None

        data = _load_json(line[len(DATA_PREFIX):])
        if not isinstance(data, dict):
            return None
        error = api_error_delta(data)
        if error is not None:
            return error

        if data.get("type") == "content_block_delta":
            delta = data.get("delta")
            if isinstance(delta, dict):
                if isinstance(delta.get("text"), str):
                    return self._span.content(delta["text"])
                if isinstance(delta.get("thinking"), str):
                    return self._span.reasoning(delta["thinking"])
        # message_start, content_block_start/stop, message_delta, message_stop, ping
        return None


# ---------------------------------------------------------------------------
# OpenAI Responses API
# ---------------------------------------------------------------------------

class OpenAIResponsesAdapter:
    """``POST /responses`` with typed ``response.*`` events."""

    def __init__(self) -> None:
        self._span = _ReasoningSpan()

    def build_request(
        self,
        messages: list[Message],
        model_id: str,
        config: ProviderConfig,
        temperature: float,
    ) -> HttpRequest:
        items: list[dict[str, Any]] = []
        for msg in messages:
            item: dict[str, Any] = {"role": msg.role.value}
            if msg.image_bytes:
                item["content"] = [
                    {"type": "input_text", "text": msg.text},
                    {"type": "input_image", "image_url": _data_url(msg.image_bytes)},
                ]
            else:
                item["content"] = msg.text
            items.append(item)
        return HttpRequest(
            url=build_url(config.base_url, "responses", config.api_type),
            headers=build_headers(config),
            body={
                "model": model_id,
                "input": items,
                "stream": True,
                "temperature": temperature,
            },
        )

    def parse_line(self, line: str) -> str | None:
        if not line.startswith(DATA_PREFIX):
            return _non_data_line("OpenAI Responses", line)
        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_SENTINEL:
            return None

        data = _load_json(payload)
        if not isinstance(data, dict):
            return None
        error = api_error_delta(data)
        if error is not None:
            return error

        event_type = data.get("type")
        delta = data.get("delta")
        if event_type == "response.output_text.delta" and isinstance(delta, str):
            return self._span.content(delta)
        if event_type == "response.reasoning.delta" and isinstance(delta, str):
            return self._span.reasoning(delta)

        # Some compatible gateways still send chat-completions chunks
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            chunk_delta = choices[0].get("delta")
            if isinstance(chunk_delta, dict) and isinstance(chunk_delta.get("content"), str):
                return self._span.content(chunk_delta["content"])
        return None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def create_adapter(api_type: ApiType) -> VendorAdapter:
    """Return a fresh adapter for *api_type*."""
    if api_type in (ApiType.OPENAI, ApiType.WORKERS_AI):
        return OpenAIChatAdapter()
    if api_type == ApiType.GEMINI:
        return GeminiAdapter()
    if api_type == ApiType.ANTHROPIC:
        return AnthropicAdapter()
    if api_type == ApiType.OPENAI_RESPONSES:
        return OpenAIResponsesAdapter()
    raise ValueError(f"Unsupported api_type: {api_type!r}")
