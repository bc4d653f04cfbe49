"""Extract user facts from a finished exchange into the memory bank."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from polychat.models import Message, Role

from .bank import SHORT_TERM_TTL, MemoryBank, MemoryType

_logger = logging.getLogger(__name__)

EXTRACTION_TEMPERATURE = 0.05
RECENT_MESSAGE_COUNT = 6
HIGH_PRIORITY_IMPORTANCE = 0.9
DEFAULT_IMPORTANCE = 0.5

EXTRACTION_PROMPT = """任务：你是一个用户侧写分析师，从对话中提取用户的真实信息。

━━━ 绝对禁止 ━━━
• 禁止提取 AI 说的任何内容（建议、举例、假设、反问）作为用户事实。
• 禁止自行推测或补充信息。
• 只有用户亲口说出或明确确认的内容才能提取。
• 禁止把"用户要求记住X"作为单独一条——直接记X本身。
• 相关联的信息必须合并为一条，绝不拆分。

━━━ 合并规则（极重要） ━━━
同一个人/事/属性的不同侧面必须合并为一条：
❌ 错误（拆分）：1. 用户今年17岁  2. 用户2009年出生
✅ 正确（合并）：[长期] 用户2009年生，今年17岁

❌ 错误（元记录）：用户要求记住他今年17岁
✅ 正确：直接记事实本身，不记"要求记住"这个动作

━━━ 反例 ━━━
对话：
AI: 如果你喜欢看电影，可以和我讨论。
用户: 好的
❌ 用户喜欢看电影（AI 的假设，用户没确认）
✅ 无

━━━ 输出格式 ━━━
- [临时] 当下心情、短期计划（24h失效）
- [长期] 身份、习惯、喜好、关系等永久事实
- [!] 用户明确要求记住的信息（永久）

第三人称，每条≤20字，相关信息合并为一条。无新信息回复"无"。

对话内容：
{conversation}"""

Embedder = Callable[[str], Awaitable[list[float]]]
Completer = Callable[[str, float], Awaitable[str]]


@dataclass
class ExtractedMemory:
    content: str
    type: MemoryType = MemoryType.LONG_TERM
    importance: float = DEFAULT_IMPORTANCE
    expiration: float | None = None


def format_conversation(messages: list[Message]) -> str:
    """Render the most recent exchange as ``用户: ...`` / ``AI: ...`` lines."""
    lines = []
    for msg in messages[-RECENT_MESSAGE_COUNT:]:
        if msg.role == Role.SYSTEM:
            continue
        speaker = "用户" if msg.role == Role.USER else "AI"
        lines.append(f"{speaker}: {msg.text}")
    return "\n".join(lines)


def _strip_bullet(text: str) -> str:
    return text[2:] if text.startswith("- ") else text


def parse_extraction(result: str, now: float | None = None) -> list[ExtractedMemory]:
    """Parse the model's reply into memories.

    ``无`` (or any reply starting with it) means nothing was found.
    """
    text = result.strip()
    if not text or text.startswith("无"):
        return []
    now = time.time() if now is None else now

    found: list[ExtractedMemory] = []
    for raw in text.split("\n"):
        line = raw.strip()
        item = ExtractedMemory(content="")
        if line.startswith("[!] ") or line.startswith("- [!] "):
            line = _strip_bullet(line.replace("[!] ", ""))
            item.importance = HIGH_PRIORITY_IMPORTANCE
        elif line.startswith("[临时]") or line.startswith("- [临时]"):
            line = _strip_bullet(line.replace("[临时]", ""))
            item.type = MemoryType.SHORT_TERM
            item.expiration = now + SHORT_TERM_TTL
        elif line.startswith("[长期]") or line.startswith("- [长期]"):
            line = _strip_bullet(line.replace("[长期]", ""))
        elif line.startswith("- ") or line.startswith("* "):
            line = line[2:]

        item.content = line.strip()
        if len(item.content) <= 2:
            continue
        found.append(item)
    return found


async def extract_memories(
    messages: list[Message],
    complete: Completer,
    bank: MemoryBank,
    embed: Embedder | None = None,
    source: str | None = None,
) -> int:
    """Run one extraction pass and merge the results into *bank*.

    Parameters
    ----------
    messages:
        The session transcript.  Needs at least two messages.
    complete:
        ``complete(prompt, temperature) -> reply`` against the helper model.
    embed:
        Optional embedding function; a failed embedding stores the
        memory without a vector.

    Returns
    -------
    int
        Number of memories inserted or merged.
    """
    if len(messages) < 2:
        return 0
    conversation = format_conversation(messages)
    if not conversation:
        return 0

    reply = await complete(EXTRACTION_PROMPT.format(conversation=conversation), EXTRACTION_TEMPERATURE)
    added = 0
    for item in parse_extraction(reply):
        vector = None
        if embed is not None:
            try:
                vector = await embed(item.content)
            except Exception as exc:
                _logger.warning("Embedding failed for memory %r: %s", item.content, exc)
        if bank.add(
            item.content,
            embedding=vector,
            importance=item.importance,
            type=item.type,
            expiration=item.expiration,
            source=source,
        ):
            added += 1
    _logger.info("Memory extraction done, %d memories stored", len(bank))
    return added
