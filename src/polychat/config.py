"""Configuration for polychat.

Config discovery (first match wins):
  1. Explicit path passed to :func:`load_config`
  2. ``./polychat.yaml``
  3. ``~/.config/polychat/config.yaml``
  4. Built-in defaults

Provider definitions are persisted data (see :mod:`polychat.store`) and
are modelled with pydantic; runtime settings are plain dataclasses.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from polychat.errors import ConfigurationError
from polychat.models import ModelInfo
from polychat.types import ApiType, CapabilityState, ThinkingMode

_logger = logging.getLogger(__name__)

# Separator in a global model selection id: "<provider-id>|<model-id>"
MODEL_ID_SEPARATOR = "|"


# ---------------------------------------------------------------------------
# Provider configuration (persisted)
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    """A vendor endpoint with its key pool and wire-protocol variant."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    base_url: str
    api_keys: list[str] = Field(default_factory=list)
    current_key_index: int = 0
    api_type: ApiType = ApiType.OPENAI
    is_preset: bool = False
    available_models: list[ModelInfo] = Field(default_factory=list)
    favorite_model_ids: list[str] = Field(default_factory=list)
    is_validated: bool = False
    last_used_model_id: str | None = None
    models_last_fetched: float | None = None

    @property
    def api_key(self) -> str:
        """Active key, index clamped into the pool; empty when no keys."""
        if not self.api_keys:
            return ""
        idx = min(max(self.current_key_index, 0), len(self.api_keys) - 1)
        return self.api_keys[idx]

    def set_api_key(self, value: str) -> None:
        if not self.api_keys:
            self.api_keys = [value]
        elif self.current_key_index < len(self.api_keys):
            self.api_keys[self.current_key_index] = value
        else:
            self.api_keys.append(value)

    def rotate_key(self) -> None:
        """Round-robin to the next key in the pool."""
        if len(self.api_keys) <= 1:
            return
        self.current_key_index = (self.current_key_index + 1) % len(self.api_keys)

    def is_model_favorited(self, model_id: str) -> bool:
        return model_id in self.favorite_model_ids

    def toggle_favorite(self, model_id: str) -> None:
        if model_id in self.favorite_model_ids:
            self.favorite_model_ids.remove(model_id)
        else:
            self.favorite_model_ids.append(model_id)

    def selection_id(self, model_id: str) -> str:
        return f"{self.id}{MODEL_ID_SEPARATOR}{model_id}"


def _preset(name: str, base_url: str, api_type: ApiType = ApiType.OPENAI) -> ProviderConfig:
    return ProviderConfig(name=name, base_url=base_url, api_type=api_type, is_preset=True)


def preset_providers() -> list[ProviderConfig]:
    """Built-in vendor endpoints offered on first launch."""
    return [
        _preset("智谱AI", "https://open.bigmodel.cn/api/paas/v4"),
        _preset("OpenAI", "https://api.openai.com/v1"),
        _preset("Anthropic", "https://api.anthropic.com", ApiType.ANTHROPIC),
        _preset("DeepSeek", "https://api.deepseek.com"),
        _preset("Nvidia", "https://integrate.api.nvidia.com/v1"),
        _preset("硅基流动", "https://api.siliconflow.cn/v1"),
        _preset("阿里云百炼", "https://dashscope.aliyuncs.com/compatible-mode/v1"),
        _preset("ModelScope", "https://api-inference.modelscope.cn/v1"),
        _preset("OpenRouter", "https://openrouter.ai/api/v1"),
        _preset("Gemini", "https://generativelanguage.googleapis.com/v1beta", ApiType.GEMINI),
        _preset("OpenCode Zen", "https://opencode.ai/zen/v1"),
    ]


def parse_model_selection(selection: str) -> tuple[str, str]:
    """Split ``"<provider-id>|<model-id>"``.

    Raises
    ------
    ConfigurationError
        If the id does not have exactly two non-empty components.
    """
    parts = selection.split(MODEL_ID_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ConfigurationError("⚠️ 请先在设置中选择一个模型")
    return parts[0], parts[1]


# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------

@dataclass
class ThrottleSpec:
    """UI publish throttle.  ``breakpoints`` are ``(length, interval)`` pairs."""

    base_interval: float = 0.15
    breakpoints: list[tuple[int, float]] = field(
        default_factory=lambda: [(5_000, 0.25), (20_000, 0.5), (50_000, 1.0)]
    )

    def __post_init__(self) -> None:
        self.breakpoints = [(int(t), float(i)) for t, i in self.breakpoints]
        prev_threshold, prev_interval = -1, self.base_interval
        for threshold, interval in self.breakpoints:
            if threshold <= prev_threshold or interval < prev_interval:
                raise ValueError(
                    "throttle breakpoints must have ascending thresholds "
                    "and non-decreasing intervals"
                )
            prev_threshold, prev_interval = threshold, interval


@dataclass
class TransportSpec:
    request_timeout: float = 120.0
    resource_timeout: float = 300.0


@dataclass
class ModelSettings:
    """Per-model capability overrides."""

    thinking: CapabilityState = CapabilityState.AUTO
    vision: CapabilityState = CapabilityState.AUTO


@dataclass
class ChatSettings:
    """Top-level runtime settings for the chat core."""

    temperature: float = 0.7
    history_message_count: int = 10
    custom_system_prompt: str = ""
    thinking_mode: ThinkingMode = ThinkingMode.AUTO

    # Retry
    auto_retry_enabled: bool = False
    max_retries: int = 3
    retry_delay: float = 1.0

    # Model selection ("<provider-id>|<model-id>")
    selected_model_id: str = ""
    helper_model_id: str = ""

    # Memory / embedding
    memory_enabled: bool = True
    embedding_provider_id: str = ""
    embedding_model_id: str = ""
    workers_ai_embedding_url: str = ""

    incognito: bool = False

    model_settings: dict[str, ModelSettings] = field(default_factory=dict)
    throttle: ThrottleSpec = field(default_factory=ThrottleSpec)
    transport: TransportSpec = field(default_factory=TransportSpec)

    @property
    def background_model_id(self) -> str:
        """Model used for titles and memory extraction."""
        return self.helper_model_id or self.selected_model_id


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./polychat.yaml"),
    Path.home() / ".config" / "polychat" / "config.yaml",
]


def _parse_throttle(raw: dict[str, Any] | None) -> ThrottleSpec:
    if not raw:
        return ThrottleSpec()
    spec = ThrottleSpec()
    base = raw.get("base_interval", spec.base_interval)
    breakpoints = raw.get("breakpoints", spec.breakpoints)
    return ThrottleSpec(base_interval=float(base), breakpoints=[tuple(bp) for bp in breakpoints])


def _parse_model_settings(raw: dict[str, Any] | None) -> dict[str, ModelSettings]:
    result: dict[str, ModelSettings] = {}
    for model_id, sraw in (raw or {}).items():
        sraw = sraw or {}
        result[model_id] = ModelSettings(
            thinking=CapabilityState(sraw.get("thinking", "auto")),
            vision=CapabilityState(sraw.get("vision", "auto")),
        )
    return result


def load_config(path: str | Path | None = None) -> ChatSettings:
    """Load settings from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ChatSettings
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return ChatSettings()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return ChatSettings()

    _logger.info("Loading config from %s", config_path)
    with open(config_path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    defaults = ChatSettings()
    transport_raw = raw.get("transport") or {}

    return ChatSettings(
        temperature=float(raw.get("temperature", defaults.temperature)),
        history_message_count=int(raw.get("history_message_count", defaults.history_message_count)),
        custom_system_prompt=raw.get("custom_system_prompt", ""),
        thinking_mode=ThinkingMode(raw.get("thinking_mode", "auto")),
        auto_retry_enabled=bool(raw.get("auto_retry_enabled", False)),
        max_retries=int(raw.get("max_retries", defaults.max_retries)),
        retry_delay=float(raw.get("retry_delay", defaults.retry_delay)),
        selected_model_id=raw.get("selected_model_id", ""),
        helper_model_id=raw.get("helper_model_id", ""),
        memory_enabled=bool(raw.get("memory_enabled", True)),
        embedding_provider_id=raw.get("embedding_provider_id", ""),
        embedding_model_id=raw.get("embedding_model_id", ""),
        workers_ai_embedding_url=raw.get("workers_ai_embedding_url", ""),
        incognito=bool(raw.get("incognito", False)),
        model_settings=_parse_model_settings(raw.get("model_settings")),
        throttle=_parse_throttle(raw.get("throttle")),
        transport=TransportSpec(
            request_timeout=float(transport_raw.get("request_timeout", 120.0)),
            resource_timeout=float(transport_raw.get("resource_timeout", 300.0)),
        ),
    )
