"""Split a chunked token stream into answer and ``<think>`` reasoning text.

The splitter keeps a pending buffer holding the unconsumed tail of
everything fed so far.  On every chunk it looks for the tag that would
flip the current state (``</think>`` while thinking, ``<think>``
otherwise), case-insensitively.  When no tag is found, all but the last
``len(tag) - 1`` characters are committed: the retained tail may be the
start of a tag split across chunk boundaries.

Nested tags are not supported.  A second ``<think>`` while already
thinking is plain text inside the thinking stream.  An unterminated tag
is emitted as plain text by :meth:`ThinkTagSplitter.finish`.
"""

from __future__ import annotations

import re

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"

# Literal substring match, case-insensitive
_TAG_PATTERNS = {
    OPEN_TAG: re.compile(re.escape(OPEN_TAG), re.IGNORECASE),
    CLOSE_TAG: re.compile(re.escape(CLOSE_TAG), re.IGNORECASE),
}


class ThinkTagSplitter:
    """Incremental ``<think>``/``</think>`` state machine.

    Usage::

        splitter = ThinkTagSplitter()
        for chunk in stream:
            answer_delta, thinking_delta = splitter.feed(chunk)
        answer_delta, thinking_delta = splitter.finish()
        splitter.answer, splitter.thinking
    """

    def __init__(self) -> None:
        self.is_thinking = False
        self.pending_buffer = ""
        self.answer = ""
        self.thinking = ""

    def reset(self) -> None:
        """Drop all accumulated state (used between retry attempts)."""
        self.is_thinking = False
        self.pending_buffer = ""
        self.answer = ""
        self.thinking = ""

    @property
    def total_length(self) -> int:
        return len(self.answer) + len(self.thinking)

    def feed(self, chunk: str) -> tuple[str, str]:
        """Consume *chunk*; return the ``(answer, thinking)`` text committed by it."""
        answer_delta: list[str] = []
        thinking_delta: list[str] = []
        self.pending_buffer += chunk

        while True:
            tag = CLOSE_TAG if self.is_thinking else OPEN_TAG
            match = _TAG_PATTERNS[tag].search(self.pending_buffer)
            if match:
                self._commit(self.pending_buffer[:match.start()], answer_delta, thinking_delta)
                self.is_thinking = not self.is_thinking
                self.pending_buffer = self.pending_buffer[match.end():]
                continue

            keep = len(tag) - 1
            if len(self.pending_buffer) > keep:
                cut = len(self.pending_buffer) - keep
                self._commit(self.pending_buffer[:cut], answer_delta, thinking_delta)
                self.pending_buffer = self.pending_buffer[cut:]
            break

        return "".join(answer_delta), "".join(thinking_delta)

    def finish(self) -> tuple[str, str]:
        """Flush the retained tail into the current stream at end of input."""
        answer_delta: list[str] = []
        thinking_delta: list[str] = []
        if self.pending_buffer:
            self._commit(self.pending_buffer, answer_delta, thinking_delta)
            self.pending_buffer = ""
        return "".join(answer_delta), "".join(thinking_delta)

    def _commit(self, text: str, answer_delta: list[str], thinking_delta: list[str]) -> None:
        if not text:
            return
        if self.is_thinking:
            self.thinking += text
            thinking_delta.append(text)
        else:
            self.answer += text
            answer_delta.append(text)


def split_think_tags(text: str) -> tuple[str, str]:
    """One-shot helper: return ``(answer, thinking)`` for a complete string."""
    splitter = ThinkTagSplitter()
    splitter.feed(text)
    splitter.finish()
    return splitter.answer, splitter.thinking
