"""In-memory conversation session store."""

import threading

from luna.orchestration.session import ConversationSession


class SessionStore:
    """In-memory registry of live conversation sessions.

    Returns live handles rather than copies: the SessionController is the
    only writer and serialises work per session through its busy flag.
    """

    def __init__(self, max_sessions: int = 100, max_messages_per_session: int = 200):
        if max_sessions <= 0:
            raise ValueError("max_sessions must be > 0")
        if max_messages_per_session <= 0:
            raise ValueError("max_messages_per_session must be > 0")
        self._sessions: dict[str, ConversationSession] = {}
        self._max_sessions = max_sessions
        self._max_messages = max_messages_per_session
        self._lock = threading.Lock()

    def create(self, role: str = "member", page_context: str | None = None) -> ConversationSession:
        """Create and register a new session."""
        session = ConversationSession(
            role=role,
            page_context=page_context,
            max_messages=self._max_messages,
        )
        with self._lock:
            self._sessions[session.session_id] = session
            self._enforce_session_limit()
        return session

    def get(self, session_id: str) -> ConversationSession | None:
        """Get session by ID, or None if not found."""
        with self._lock:
            return self._sessions.get(session_id)

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def list_session_ids(self) -> set[str]:
        """Return active session IDs."""
        with self._lock:
            return set(self._sessions.keys())

    def delete(self, session_id: str) -> bool:
        """Delete session. Returns True if existed."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def _enforce_session_limit(self) -> None:
        """Evict least recently active sessions. Must be called with lock held."""
        if len(self._sessions) > self._max_sessions:
            sorted_ids = sorted(
                self._sessions.keys(),
                key=lambda sid: self._sessions[sid].last_active,
            )
            for sid in sorted_ids[: len(self._sessions) - self._max_sessions]:
                del self._sessions[sid]
