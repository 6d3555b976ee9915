"""
Registry of agent sessions.

Shared between the accept loop (insert), the operator console (list,
resolve) and every RPC failure path (flag disconnected). All access goes
through one lock; no I/O is ever done while holding it.
"""

import logging
import socket
import threading
from typing import Dict, List, Optional, Tuple, Union

from .session import Session

logger = logging.getLogger(__name__)


class SessionNotFound(KeyError):
    """No session was ever registered under this id."""


class Registry:
    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[int, Session] = {}
        self._last_id = 0

    def register(self, conn: socket.socket, addr: Tuple[str, int],
                 metadata: Optional[Dict] = None) -> Session:
        """Create a session with the next id and insert it as connected."""
        with self._lock:
            self._last_id += 1
            session = Session(self._last_id, conn, addr, metadata)
            self._sessions[session.id] = session
        logger.info("session %d registered from %s:%s", session.id, addr[0], addr[1])
        return session

    def mark_disconnected(self, target: Union[Session, int], close: bool = True) -> bool:
        """
        Flag a session as disconnected and, unless told not to, close its stream.

        Idempotent; returns True only for the call that did the flip.
        """
        session_id = target.id if isinstance(target, Session) else target
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.connected:
                return False
            session.connected = False
        if close:
            session.close()
        logger.info("session %d marked disconnected", session_id)
        return True

    def list(self) -> List[Tuple[Session, bool]]:
        """Consistent snapshot of (session, connected), ordered by id."""
        with self._lock:
            return [(s, s.connected) for _, s in sorted(self._sessions.items())]

    def lookup(self, session_id: int) -> Session:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise SessionNotFound(session_id) from None

    def connected_sessions(self) -> List[Session]:
        return [s for s, connected in self.list() if connected]

    def close_all(self) -> None:
        for session, _ in self.list():
            self.mark_disconnected(session)
            session.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
