"""
Controller-side view of one agent connection.

A Session owns its socket exclusively. Its connected flag is only ever
flipped by the Registry; everything else here is per-session RPC
bookkeeping used by RemoteCommands.
"""

import itertools
import socket
import threading
from concurrent.futures import Future
from datetime import datetime
from typing import Dict, Optional, Set, Tuple


class TicketLock:
    """
    Mutex that grants ownership in arrival order.

    threading.Lock makes no ordering promise; foreground commands must
    complete in the order the operator issued them.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0

    def acquire(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()

    def release(self) -> None:
        with self._cond:
            self._now_serving += 1
            self._cond.notify_all()

    @property
    def queued(self) -> int:
        """Number of holders plus waiters."""
        with self._cond:
            return self._next_ticket - self._now_serving

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc):
        self.release()


class Session:
    """Represents a connected agent."""

    def __init__(self, session_id: int, conn: socket.socket, addr: Tuple[str, int],
                 metadata: Optional[Dict] = None):
        self.id = session_id
        self.conn = conn
        self.addr = addr
        self.metadata = dict(metadata or {})
        self.connected_at = datetime.now()
        self.connected = True  # written by Registry only

        self.foreground = TicketLock()
        self.send_lock = threading.Lock()
        self.state_lock = threading.Lock()
        self.pending: Dict[int, Future] = {}
        self.background: Set[int] = set()
        self._ids = itertools.count(1)

    def next_request_id(self) -> int:
        with self.state_lock:
            return next(self._ids)

    def expect(self, request_id: int) -> Future:
        """Register a foreground reply slot."""
        future: Future = Future()
        with self.state_lock:
            self.pending[request_id] = future
        return future

    def forget(self, request_id: int) -> None:
        with self.state_lock:
            self.pending.pop(request_id, None)
            self.background.discard(request_id)

    def expect_background(self, request_id: int) -> None:
        with self.state_lock:
            self.background.add(request_id)

    def claim(self, request_id) -> Tuple[Optional[Future], bool]:
        """
        Take ownership of a reply's correlation entry.

        Returns (future, False) for a foreground reply, (None, True) for a
        background one and (None, False) when nothing is waiting. An entry
        is handed out at most once.
        """
        with self.state_lock:
            future = self.pending.pop(request_id, None)
            if future is not None:
                return future, False
            if request_id in self.background:
                self.background.discard(request_id)
                return None, True
        return None, False

    def drain(self) -> Tuple[Dict[int, Future], Set[int]]:
        """Detach all outstanding requests, used when the stream dies."""
        with self.state_lock:
            pending, self.pending = self.pending, {}
            background, self.background = self.background, set()
        return pending, background

    def close(self) -> None:
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already closed by the peer
        self.conn.close()

    @property
    def hostname(self) -> str:
        return self.metadata.get("hostname", "unknown")

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"<Session {self.id} {self.addr[0]}:{self.addr[1]} {state}>"
