"""Session store and persistence backends."""

from polychat.store.persistence import InMemoryPersistence, Persistence, SqlitePersistence
from polychat.store.sessions import SessionStore

__all__ = ["InMemoryPersistence", "Persistence", "SessionStore", "SqlitePersistence"]
