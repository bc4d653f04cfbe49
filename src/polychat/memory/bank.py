"""Long/short-term user memory with embedding-based dedupe and recall."""

from __future__ import annotations

import enum
import logging
import math
import time
import uuid
from typing import Callable, Sequence

from pydantic import BaseModel, Field

_logger = logging.getLogger(__name__)

SEMANTIC_DUPLICATE_THRESHOLD = 0.85
MISSING_EMBEDDING_SCORE = 0.3
MAX_LONG_TERM = 200
MAX_SHORT_TERM = 200
SHORT_TERM_TTL = 24 * 3600


class MemoryType(str, enum.Enum):
    SHORT_TERM = "临时"
    LONG_TERM = "长期"


class MemoryItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str
    created_at: float = Field(default_factory=time.time)
    source: str | None = None
    embedding: list[float] | None = None
    importance: float = 0.5
    type: MemoryType = MemoryType.LONG_TERM
    expiration: float | None = None
    last_updated: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expiration is not None and now > self.expiration


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    denom = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if denom <= 0:
        return 0.0
    return dot / denom


class MemoryBank:
    """Ordered memory list, newest first.

    Parameters
    ----------
    items:
        Previously persisted memories.
    clock:
        Returns epoch seconds (injectable for tests).
    """

    def __init__(
        self,
        items: list[MemoryItem] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.items: list[MemoryItem] = list(items or [])
        self._clock = clock

    def __len__(self) -> int:
        return len(self.items)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(
        self,
        content: str,
        embedding: list[float] | None = None,
        importance: float = 0.5,
        type: MemoryType = MemoryType.LONG_TERM,
        expiration: float | None = None,
        source: str | None = None,
    ) -> bool:
        """Insert or merge a memory.  Returns False when nothing changed."""
        text = content.strip()
        if not text:
            return False
        now = self._clock()

        if embedding is not None:
            for item in self.items:
                if item.embedding is None:
                    continue
                sim = cosine_similarity(embedding, item.embedding)
                if sim > SEMANTIC_DUPLICATE_THRESHOLD:
                    _logger.info("Semantic duplicate (%.2f): %s ~ %s", sim, text, item.content)
                    item.content = text
                    item.last_updated = now
                    self._promote(item, type)
                    item.importance = max(item.importance, importance)
                    return True

        for item in self.items:
            if item.content == text:
                item.last_updated = now
                self._promote(item, type)
                return True

        self.items.insert(0, MemoryItem(
            content=text,
            created_at=now,
            source=source,
            embedding=embedding,
            importance=importance,
            type=type,
            expiration=expiration,
            last_updated=now,
        ))
        self.purge_expired()

        long_term = sum(1 for m in self.items if m.type == MemoryType.LONG_TERM)
        if type == MemoryType.LONG_TERM and long_term > MAX_LONG_TERM:
            _logger.warning("Long-term memory full (%d), dropping: %s", MAX_LONG_TERM, text)
            self.items.pop(0)
            return False

        short_term = [m for m in self.items if m.type == MemoryType.SHORT_TERM]
        if len(short_term) > MAX_SHORT_TERM:
            oldest = min(short_term, key=lambda m: m.last_updated or m.created_at)
            self.items.remove(oldest)
        return True

    @staticmethod
    def _promote(item: MemoryItem, incoming: MemoryType) -> None:
        if item.type == MemoryType.SHORT_TERM and incoming == MemoryType.LONG_TERM:
            item.type = MemoryType.LONG_TERM
            item.expiration = None

    def purge_expired(self) -> int:
        now = self._clock()
        before = len(self.items)
        self.items = [
            m for m in self.items
            if not (m.type == MemoryType.SHORT_TERM and m.is_expired(now))
        ]
        return before - len(self.items)

    def delete(self, memory_id: str) -> None:
        self.items = [m for m in self.items if m.id != memory_id]

    def clear(self) -> None:
        self.items.clear()

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    def active(self) -> list[MemoryItem]:
        now = self._clock()
        return [m for m in self.items if not m.is_expired(now)]

    @property
    def has_embeddings(self) -> bool:
        return any(m.embedding is not None for m in self.items)

    def retrieve(self, query_embedding: list[float] | None, top_k: int = 5) -> list[MemoryItem]:
        """Top-*k* active memories by similarity to *query_embedding*.

        Falls back to the first *k* active memories when there is no
        query vector or no stored embeddings.
        """
        active = self.active()
        if query_embedding is None or not any(m.embedding is not None for m in active):
            return active[:top_k]
        scored = [
            (cosine_similarity(query_embedding, m.embedding) if m.embedding is not None
             else MISSING_EMBEDDING_SCORE, m)
            for m in active
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [m for _, m in scored[:top_k]]

    def for_context(self, query_embedding: list[float] | None) -> list[MemoryItem]:
        """Memories injected into the system prompt.

        With a query vector: top 5 by ``0.7 * similarity + 0.3 * importance``.
        Otherwise: top 10 by importance.  Expired memories are never injected.
        """
        active = self.active()
        if query_embedding is None:
            return sorted(active, key=lambda m: m.importance, reverse=True)[:10]

        def score(m: MemoryItem) -> float:
            sim = (cosine_similarity(query_embedding, m.embedding)
                   if m.embedding is not None else MISSING_EMBEDDING_SCORE)
            return sim * 0.7 + m.importance * 0.3

        return sorted(active, key=score, reverse=True)[:5]
