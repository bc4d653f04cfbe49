"""Async HTTP transport for every provider type.

Opens streaming requests built by :mod:`polychat.llm.adapters`, yields
raw SSE lines, and performs the non-streaming calls (model listing,
embeddings).  Every ``httpx`` failure and every non-200 status is
raised as :class:`polychat.errors.TransportError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Callable

import httpx

from polychat.config import ProviderConfig, TransportSpec
from polychat.errors import EmbeddingError, TransportError
from polychat.models import Message, ModelInfo
from polychat.stream.tags import ThinkTagSplitter
from polychat.types import ApiType, HttpRequest

from .adapters import build_headers, build_url, create_adapter

_logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 100

ANTHROPIC_MODELS = (
    ("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet"),
    ("claude-3-5-haiku-20241022", "Claude 3.5 Haiku"),
    ("claude-3-opus-20240229", "Claude 3 Opus"),
    ("claude-3-sonnet-20240229", "Claude 3 Sonnet"),
    ("claude-3-haiku-20240307", "Claude 3 Haiku"),
)


class ProviderClient:
    """Shared async client for all vendor endpoints.

    Parameters
    ----------
    transport:
        Per-request timeout (also the idle read limit) and the resource
        timeout bounding a whole streamed transfer.
    http_client:
        Pre-built ``httpx.AsyncClient`` (tests pass one backed by
        ``httpx.MockTransport``).
    """

    def __init__(
        self,
        transport: TransportSpec | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        spec = transport or TransportSpec()
        self._resource_timeout = spec.resource_timeout
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(spec.request_timeout, connect=30, read=spec.request_timeout),
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_lines(
        self,
        request: HttpRequest,
        on_open: Callable[[], None] | None = None,
    ) -> AsyncIterator[str]:
        """Open *request* and yield response lines in arrival order.

        *on_open* is called once the 200 status is confirmed, before the
        first line.  The whole transfer is bounded by the resource
        timeout; each read is also bounded by the request timeout.

        Raises
        ------
        TransportError
            On connection failure, timeout, or a non-200 status.
        """
        deadline = time.monotonic() + self._resource_timeout
        try:
            async with self._client.stream(
                request.method, request.url, headers=request.headers, json=request.body,
            ) as resp:
                if resp.status_code != 200:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    _logger.warning(
                        "Stream request to %s returned %d", request.url, resp.status_code,
                    )
                    raise TransportError(
                        f"HTTP {resp.status_code}: {body[:_ERROR_BODY_LIMIT]}",
                        status_code=resp.status_code,
                        body=body[:_ERROR_BODY_LIMIT],
                    )
                if on_open is not None:
                    on_open()
                lines = resp.aiter_lines()
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise self._resource_timeout_error(request)
                    try:
                        line = await asyncio.wait_for(lines.__anext__(), remaining)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError:
                        raise self._resource_timeout_error(request) from None
                    yield line
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc

    def _resource_timeout_error(self, request: HttpRequest) -> TransportError:
        _logger.warning(
            "Stream from %s exceeded %.0fs resource timeout", request.url, self._resource_timeout,
        )
        return TransportError(f"Resource timeout after {self._resource_timeout:g}s")

    async def stream_chat(
        self,
        messages: list[Message],
        model_id: str,
        config: ProviderConfig,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Yield normalized raw deltas (``<think>`` markers included)."""
        adapter = create_adapter(config.api_type)
        request = adapter.build_request(messages, model_id, config, temperature)
        async for line in self.stream_lines(request):
            delta = adapter.parse_line(line)
            if delta:
                yield delta

    async def complete(
        self,
        messages: list[Message],
        model_id: str,
        config: ProviderConfig,
        temperature: float = 0.7,
    ) -> str:
        """Accumulate a whole reply and return its answer text.

        Reasoning spans are discarded.
        """
        splitter = ThinkTagSplitter()
        async for delta in self.stream_chat(messages, model_id, config, temperature):
            splitter.feed(delta)
        splitter.finish()
        return splitter.answer

    # ------------------------------------------------------------------
    # Model listing
    # ------------------------------------------------------------------

    async def fetch_models(self, config: ProviderConfig) -> list[ModelInfo]:
        if config.api_type == ApiType.WORKERS_AI:
            return []
        if config.api_type == ApiType.ANTHROPIC:
            return [ModelInfo(id=mid, display_name=name) for mid, name in ANTHROPIC_MODELS]

        data = await self._get_json(build_url(config.base_url, "models", config.api_type), config)
        if config.api_type == ApiType.GEMINI:
            ids = [
                str(m.get("name", "")).removeprefix("models/")
                for m in data.get("models", [])
            ]
            ids = [mid for mid in ids if "gemini" in mid]
        else:
            ids = [str(m.get("id", "")) for m in data.get("data", [])]
        return [ModelInfo(id=mid) for mid in sorted(ids) if mid]

    async def _get_json(self, url: str, config: ProviderConfig) -> dict[str, Any]:
        try:
            resp = await self._client.get(url, headers=build_headers(config))
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        if resp.status_code != 200:
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.text[:_ERROR_BODY_LIMIT]}",
                status_code=resp.status_code,
                body=resp.text[:_ERROR_BODY_LIMIT],
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError(f"Invalid JSON from {url}") from exc
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def fetch_embedding(
        self,
        text: str,
        model_id: str,
        config: ProviderConfig,
        dimensions: int | None = None,
    ) -> list[float]:
        """Embed *text* with the provider's embedding endpoint.

        Raises
        ------
        EmbeddingError
            If the provider has no embedding API or the reply is unusable.
        """
        start = time.monotonic()
        if config.api_type in (ApiType.OPENAI, ApiType.OPENAI_RESPONSES):
            body: dict[str, Any] = {"model": model_id, "input": text}
            if dimensions is not None:
                body["dimensions"] = dimensions
            data = await self._post_json(
                build_url(config.base_url, "embeddings", ApiType.OPENAI), build_headers(config), body,
            )
            try:
                vector = data["data"][0]["embedding"]
            except (KeyError, IndexError, TypeError):
                raise EmbeddingError(_embedding_error(data, "无法解析 Embedding 响应")) from None

        elif config.api_type == ApiType.GEMINI:
            body = {"model": f"models/{model_id}", "content": {"parts": [{"text": text}]}}
            if dimensions is not None:
                body["outputDimensionality"] = dimensions
            url = build_url(config.base_url, f"models/{model_id}:embedContent", ApiType.GEMINI)
            data = await self._post_json(url, build_headers(config), body)
            try:
                vector = data["embedding"]["values"]
            except (KeyError, TypeError):
                raise EmbeddingError(_embedding_error(data, "无法解析 Gemini Embedding 响应")) from None

        elif config.api_type == ApiType.WORKERS_AI:
            url = config.base_url.strip()
            if not url.startswith("http"):
                url = f"https://{url}"
            data = await self._post_json(url, {"Content-Type": "application/json"}, {"text": text})
            try:
                vector = data["data"][0]
            except (KeyError, IndexError, TypeError):
                error = data.get("error")
                raise EmbeddingError(
                    error if isinstance(error, str) else "无法解析 Workers AI 响应"
                ) from None

        else:
            raise EmbeddingError("Anthropic 不支持 Embedding API")

        _logger.debug(
            "Embedding via %s: %d dims in %.0fms",
            config.name, len(vector), (time.monotonic() - start) * 1000,
        )
        return [float(v) for v in vector]

    async def _post_json(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        try:
            data = resp.json()
        except ValueError:
            raise EmbeddingError(
                f"HTTP {resp.status_code}: {resp.text[:_ERROR_BODY_LIMIT]}"
            ) from None
        return data if isinstance(data, dict) else {}


def _embedding_error(data: dict[str, Any], fallback: str) -> str:
    error = data.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return fallback
