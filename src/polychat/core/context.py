"""Request history assembly: trimmed transcript plus one system message."""

from __future__ import annotations

from datetime import datetime

from polychat.config import ChatSettings
from polychat.llm.capabilities import thinking_enabled
from polychat.memory.bank import MemoryItem
from polychat.models import Message, Role

THINK_FORMAT_INSTRUCTION = (
    "IMPORTANT RESPONSE FORMAT:\n"
    "1. You MUST enclose your internal thought process, reasoning, or "
    "self-correction inside <think> and </think> tags.\n"
    "2. Do NOT output thinking content as bold headers (e.g. **Thinking**) "
    "or regular text.\n"
    "3. Everything outside <think> tags will be shown to the user as the "
    "final response."
)

MEMORY_HEADER = "你知道以下关于用户的信息（长期记忆）："


def build_system_prompt(
    settings: ChatSettings,
    model_id: str,
    memories: list[MemoryItem] | None = None,
    now: datetime | None = None,
) -> str:
    """Join the system parts with blank lines.

    Order: custom prompt, memories, ``<think>`` format instruction (only
    when thinking is enabled for *model_id*), current time.
    """
    parts: list[str] = []
    if settings.custom_system_prompt.strip():
        parts.append(settings.custom_system_prompt)

    if settings.memory_enabled and memories:
        lines = "\n".join(f"- {m.content}" for m in memories)
        parts.append(f"{MEMORY_HEADER}\n{lines}")

    if thinking_enabled(settings, model_id):
        parts.append(THINK_FORMAT_INSTRUCTION)

    now = now or datetime.now()
    parts.append(f"Current Time: {now.strftime('%Y/%m/%d %H:%M:%S')}")
    return "\n\n".join(parts)


def build_history(
    transcript: list[Message],
    settings: ChatSettings,
    model_id: str,
    memories: list[MemoryItem] | None = None,
    now: datetime | None = None,
) -> list[Message]:
    """History sent to the vendor for the reply at ``transcript[-1]``.

    The trailing placeholder is excluded, the last
    ``history_message_count`` messages before it are kept, and a single
    system message is prepended.
    """
    before = transcript[:-1]
    count = max(settings.history_message_count, 0)
    recent = before[-count:] if count else []
    system = Message(
        role=Role.SYSTEM,
        text=build_system_prompt(settings, model_id, memories, now),
    )
    return [system, *recent]
