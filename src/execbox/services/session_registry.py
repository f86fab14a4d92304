from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from .session_service import ExecutionSession


class SessionRegistry:
    """Live sessions by id.

    Methods never await, so each mutation is atomic with respect to other
    coroutines on the event loop.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, "ExecutionSession"] = {}

    def put(self, session: "ExecutionSession") -> Optional["ExecutionSession"]:
        """Register ``session``; returns the session it superseded, if any."""
        previous = self._sessions.get(session.id)
        self._sessions[session.id] = session
        return previous

    def get(self, session_id: str) -> Optional["ExecutionSession"]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str, session: Optional["ExecutionSession"] = None) -> bool:
        current = self._sessions.get(session_id)
        if current is None:
            return False
        # a superseded session must not evict its successor
        if session is not None and current is not session:
            return False
        del self._sessions[session_id]
        return True

    def ids(self) -> List[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
