"""Durable storage for sessions, providers and memories.

The chat core only depends on the :class:`Persistence` protocol.
:class:`SqlitePersistence` stores each collection as one JSON document
in a key-value table; :class:`InMemoryPersistence` backs tests and
incognito use.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter

from polychat.config import ProviderConfig
from polychat.memory.bank import MemoryItem
from polychat.models import Session

_SESSIONS_KEY = "sessions"
_PROVIDERS_KEY = "providers"
_MEMORIES_KEY = "memories"

_sessions_adapter = TypeAdapter(list[Session])
_providers_adapter = TypeAdapter(list[ProviderConfig])
_memories_adapter = TypeAdapter(list[MemoryItem])


class Persistence(Protocol):
    def load_sessions(self) -> list[Session]: ...

    def save_sessions(self, sessions: list[Session]) -> None: ...

    def load_providers(self) -> list[ProviderConfig]: ...

    def save_providers(self, providers: list[ProviderConfig]) -> None: ...

    def load_memories(self) -> list[MemoryItem]: ...

    def save_memories(self, memories: list[MemoryItem]) -> None: ...


class SqlitePersistence:
    """SQLite-backed key-value document store."""

    def __init__(self, db_path: str = "~/.polychat/polychat.db"):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path))
        self._init_schema()

    def _init_schema(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL
            );
        """)
        self._conn.commit()

    def _get(self, key: str) -> bytes | None:
        row = self._conn.execute(
            "SELECT value FROM documents WHERE key = ?", (key,)
        ).fetchone()
        return row[0].encode("utf-8") if row else None

    def _put(self, key: str, value: bytes):
        now = time.time()
        self._conn.execute(
            "INSERT INTO documents (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=?, updated_at=?",
            (key, value.decode("utf-8"), now, value.decode("utf-8"), now),
        )
        self._conn.commit()

    def load_sessions(self) -> list[Session]:
        raw = self._get(_SESSIONS_KEY)
        return _sessions_adapter.validate_json(raw) if raw else []

    def save_sessions(self, sessions: list[Session]) -> None:
        self._put(_SESSIONS_KEY, _sessions_adapter.dump_json(sessions))

    def load_providers(self) -> list[ProviderConfig]:
        raw = self._get(_PROVIDERS_KEY)
        return _providers_adapter.validate_json(raw) if raw else []

    def save_providers(self, providers: list[ProviderConfig]) -> None:
        self._put(_PROVIDERS_KEY, _providers_adapter.dump_json(providers))

    def load_memories(self) -> list[MemoryItem]:
        raw = self._get(_MEMORIES_KEY)
        return _memories_adapter.validate_json(raw) if raw else []

    def save_memories(self, memories: list[MemoryItem]) -> None:
        self._put(_MEMORIES_KEY, _memories_adapter.dump_json(memories))

    def close(self):
        self._conn.close()


class InMemoryPersistence:
    """Process-local store that deep-copies on every save and load."""

    def __init__(self) -> None:
        self._sessions: list[Session] = []
        self._providers: list[ProviderConfig] = []
        self._memories: list[MemoryItem] = []
        self.save_count = 0

    def load_sessions(self) -> list[Session]:
        return [s.model_copy(deep=True) for s in self._sessions]

    def save_sessions(self, sessions: list[Session]) -> None:
        self._sessions = [s.model_copy(deep=True) for s in sessions]
        self.save_count += 1

    def load_providers(self) -> list[ProviderConfig]:
        return [p.model_copy(deep=True) for p in self._providers]

    def save_providers(self, providers: list[ProviderConfig]) -> None:
        self._providers = [p.model_copy(deep=True) for p in providers]

    def load_memories(self) -> list[MemoryItem]:
        return [m.model_copy(deep=True) for m in self._memories]

    def save_memories(self, memories: list[MemoryItem]) -> None:
        self._memories = [m.model_copy(deep=True) for m in memories]
