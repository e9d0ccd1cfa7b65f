"""Thread-safe registry of terminal sessions."""

from __future__ import annotations

import threading

from projectdeck.terminal.models import TerminalSession


class SessionRegistry:
    """Session id to session map behind one lock.

    Every method holds the lock only for the dictionary operation itself;
    callers stop processes or await I/O outside of it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, TerminalSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def add(self, session: TerminalSession) -> TerminalSession:
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> TerminalSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def snapshot(self) -> list[TerminalSession]:
        with self._lock:
            return list(self._sessions.values())

    def find_by_project(self, project_name: str) -> TerminalSession | None:
        with self._lock:
            for session in self._sessions.values():
                if session.project_name == project_name:
                    return session
        return None

    def add_if_absent(self, session: TerminalSession) -> TerminalSession:
        """Register ``session`` unless one exists for its project; return the registered one."""
        with self._lock:
            for existing in self._sessions.values():
                if existing.project_name == session.project_name:
                    return existing
            self._sessions[session.session_id] = session
            return session

    def pop(self, session_id: str) -> TerminalSession | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def drain(self) -> list[TerminalSession]:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions
