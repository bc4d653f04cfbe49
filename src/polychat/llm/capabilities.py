"""Model capability heuristics (reasoning / vision) keyed on model id."""

from __future__ import annotations

import re
from dataclasses import dataclass

from polychat.config import ChatSettings
from polychat.types import CapabilityState, SupportStatus, ThinkingMode

_THINKING_KEYWORDS = (
    "thinking", "reasoner", "reasoning", "deepseek-r1", "dracarys",
    "o1", "o3", "cot", "qvq", "gemini-3", "gemini-2.5-pro", "qwq",
)

_VISION_KEYWORDS = (
    "gpt", "vision", "vl", "claude", "gemini", "llava", "vila", "neva",
    "fuyu", "paligemma", "multimodal", "image", "qvq",
)

# o1-/o3-/o4- families
_O_SERIES = re.compile(r"\bo[134]-")


@dataclass(frozen=True)
class ModelCapability:
    supports_vision: bool
    supports_thinking: bool


def lookup_capability(model_id: str) -> ModelCapability | None:
    """Infer capabilities from *model_id*; ``None`` when nothing matched."""
    lower = model_id.lower()
    thinking = any(kw in lower for kw in _THINKING_KEYWORDS)
    vision = any(kw in lower for kw in _VISION_KEYWORDS) or bool(_O_SERIES.search(lower))

    if "o1-preview" in lower or "o1-mini" in lower:
        vision = False
    if "deepseek-r1" in lower and "distill" not in lower and "vision" not in lower:
        vision = False
    if "qwq" in lower:
        vision = False
    if "qvq" in lower:
        vision = thinking = True

    if thinking or vision:
        return ModelCapability(supports_vision=vision, supports_thinking=thinking)
    return None


def thinking_support(settings: ChatSettings, model_id: str) -> SupportStatus:
    """Per-model override, then global ``enabled`` mode, then heuristics."""
    override = settings.model_settings.get(model_id)
    if override is not None:
        if override.thinking == CapabilityState.ENABLED:
            return SupportStatus.SUPPORTED
        if override.thinking == CapabilityState.DISABLED:
            return SupportStatus.UNSUPPORTED

    if settings.thinking_mode == ThinkingMode.ENABLED:
        return SupportStatus.SUPPORTED

    info = lookup_capability(model_id)
    if info is not None and info.supports_thinking:
        return SupportStatus.SUPPORTED

    lower = model_id.lower()
    if (
        "gpt-3" in lower
        or ("gpt-4" in lower and "4o" not in lower)
        or "deepseek-chat" in lower
        or "deepseek-v3" in lower
    ):
        return SupportStatus.UNSUPPORTED
    return SupportStatus.UNKNOWN


def vision_support(settings: ChatSettings, model_id: str) -> SupportStatus:
    override = settings.model_settings.get(model_id)
    if override is not None:
        if override.vision == CapabilityState.ENABLED:
            return SupportStatus.SUPPORTED
        if override.vision == CapabilityState.DISABLED:
            return SupportStatus.UNSUPPORTED

    info = lookup_capability(model_id)
    if info is not None and info.supports_vision:
        return SupportStatus.SUPPORTED

    lower = model_id.lower()
    if "gpt-3" in lower or "deepseek-r1" in lower:
        return SupportStatus.UNSUPPORTED
    return SupportStatus.UNKNOWN


def thinking_enabled(settings: ChatSettings, model_id: str) -> bool:
    """Whether the ``<think>`` format instruction is sent for *model_id*."""
    if settings.thinking_mode == ThinkingMode.ENABLED:
        return True
    if settings.thinking_mode == ThinkingMode.DISABLED:
        return False
    return thinking_support(settings, model_id) == SupportStatus.SUPPORTED
