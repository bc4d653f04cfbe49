"""In-memory session list with explicit persistence checkpoints."""

from __future__ import annotations

import logging
import time

from polychat.models import DEFAULT_SESSION_TITLE, Message, Role, Session

from .persistence import Persistence

_logger = logging.getLogger(__name__)

DERIVED_TITLE_LENGTH = 15


def derive_title(text: str) -> str:
    """First characters of *text*, with ``...`` when truncated."""
    clean = text.strip()
    if len(clean) > DERIVED_TITLE_LENGTH:
        return clean[:DERIVED_TITLE_LENGTH] + "..."
    return clean


class SessionStore:
    """Ordered sessions (newest first) and the current-session pointer.

    Mutations only touch memory.  Call :meth:`save` at the checkpoints
    (message append, finalize, cancel, failure); incognito mode turns
    :meth:`save` into a no-op.
    """

    def __init__(self, persistence: Persistence, incognito: bool = False) -> None:
        self._persistence = persistence
        self.incognito = incognito
        self.sessions: list[Session] = persistence.load_sessions()
        self.current_id: str | None = self.sessions[0].id if self.sessions else None
        if self.current_id is None:
            self.new_session()

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    @property
    def current(self) -> Session:
        session = self.get(self.current_id) if self.current_id else None
        if session is None:
            session = self.new_session()
        return session

    def get(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def new_session(self) -> Session:
        session = Session(title=DEFAULT_SESSION_TITLE)
        self.sessions.insert(0, session)
        self.current_id = session.id
        self.save()
        return session

    def select(self, session_id: str) -> None:
        if self.get(session_id) is None:
            raise KeyError(session_id)
        self.current_id = session_id

    def rename(self, session_id: str, title: str) -> None:
        session = self.get(session_id)
        if session is None:
            raise KeyError(session_id)
        session.title = title
        session.title_final = True
        self.save()

    def delete(self, session_id: str) -> None:
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if self.current_id == session_id:
            if self.sessions:
                self.current_id = self.sessions[0].id
            else:
                self.new_session()
                return
        self.save()

    # ------------------------------------------------------------------
    # Message mutation (single writer: the orchestrator / controller)
    # ------------------------------------------------------------------

    def set_messages(self, session: Session, messages: list[Message]) -> None:
        """Replace the transcript without writing to disk."""
        session.messages = messages
        session.last_modified = time.time()
        if session.is_untitled and not session.title_final:
            first = session.first_user_message()
            if first is not None and first.text.strip():
                session.title = derive_title(first.text)

    def append(self, session: Session, message: Message) -> int:
        """Append *message*; return its index."""
        self.set_messages(session, [*session.messages, message])
        return len(session.messages) - 1

    def apply_generated_title(self, session_id: str, title: str) -> bool:
        """Overwrite the derived title once.  Returns False if already final."""
        session = self.get(session_id)
        if session is None or session.title_final:
            return False
        session.title = title
        session.title_final = True
        self.save()
        return True

    def needs_title(self, session: Session) -> bool:
        return not session.title_final and any(m.role == Role.USER for m in session.messages)

    def save(self) -> None:
        if self.incognito:
            return
        self._persistence.save_sessions(self.sessions)
        _logger.debug("Saved %d sessions", len(self.sessions))
