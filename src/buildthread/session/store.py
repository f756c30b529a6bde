"""In-process registry of live build sessions."""

from __future__ import annotations

from .models import BuildSession


class DuplicateSessionError(RuntimeError):
    """Raised when a thread already has a registered session."""


class SessionStore:
    """Keeps the id index and the thread index consistent as one unit.

    Neither mutation suspends, so within one event loop a reader never sees
    one index updated without the other.
    """

    def __init__(self) -> None:
        self._by_id: dict[str, BuildSession] = {}
        self._by_thread: dict[int, str] = {}

    def get_by_id(self, session_id: str) -> BuildSession | None:
        return self._by_id.get(session_id)

    def get_by_thread(self, thread_id: int) -> BuildSession | None:
        session_id = self._by_thread.get(thread_id)
        return self._by_id.get(session_id) if session_id else None

    def put(self, session: BuildSession) -> None:
        owner = self._by_thread.get(session.thread_id)
        if owner is not None and owner != session.id:
            raise DuplicateSessionError(
                f"Thread {session.thread_id} already belongs to session {owner}"
            )
        if session.id in self._by_id and self._by_id[session.id].thread_id != session.thread_id:
            raise DuplicateSessionError(f"Session {session.id} is already registered")
        self._by_id[session.id] = session
        self._by_thread[session.thread_id] = session.id

    def delete(self, session_id: str) -> BuildSession | None:
        session = self._by_id.pop(session_id, None)
        if session is not None and self._by_thread.get(session.thread_id) == session_id:
            del self._by_thread[session.thread_id]
        return session

    def active_sessions(self) -> list[BuildSession]:
        return [session for session in self._by_id.values() if session.is_active]

    def all_sessions(self) -> list[BuildSession]:
        return list(self._by_id.values())

    def thread_ids(self) -> set[int]:
        return set(self._by_thread)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._by_id


__all__ = ["DuplicateSessionError", "SessionStore"]
