"""
Agent connection lifecycle.

    CONNECTING --ok--> SERVING --stream error--> FAILED --delay--> CONNECTING
         |                |
         +--error, delay--+ (retry forever)
                          +--disconnect request--> TERMINATED

Only a clean disconnect request from the controller ends the loop; a
closed or broken stream is always retried.
"""

import enum
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional

from .. import protocol
from ..errors import ProtocolError, TransportError
from .handlers import Handlers, hello_message

logger = logging.getLogger(__name__)

RETRY_DELAY = 5.0
CONNECT_TIMEOUT = 10.0
MAX_WORKERS = 4


class State(enum.Enum):
    CONNECTING = "connecting"
    SERVING = "serving"
    FAILED = "failed"
    TERMINATED = "terminated"


def open_connection(host: str, port: int) -> socket.socket:
    conn = socket.create_connection((host, port), timeout=CONNECT_TIMEOUT)
    conn.settimeout(None)
    return conn


class Link:
    """Per-connection state: the stream, its writer lock and worker pool."""

    def __init__(self, conn: socket.socket, max_workers: int = MAX_WORKERS):
        self.conn = conn
        self.closed = False
        self._send_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agent-worker")

    def send(self, msg: Dict) -> None:
        with self._send_lock:
            if self.closed:
                raise TransportError("connection already closed")
            protocol.send_message(self.conn, msg)

    def submit(self, handler: Callable[[Dict], Dict], msg: Dict) -> None:
        """Run a handler off the read loop and write its reply when done."""
        self._pool.submit(self._work, handler, msg)

    def _work(self, handler: Callable[[Dict], Dict], msg: Dict) -> None:
        reply = handler(msg)
        try:
            try:
                self.send(reply)
            except ProtocolError as e:
                logger.warning("result of request %r cannot be sent: %s", msg.get("id"), e)
                self.send(protocol.result(msg.get("id"), error=f"Result too large to send ({e})",
                                          background=bool(msg.get("background"))))
        except TransportError as e:
            logger.info("dropping result of request %r: %s", msg.get("id"), e)
            self._wake_reader()

    def _wake_reader(self) -> None:
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already gone

    def close(self) -> None:
        with self._send_lock:
            self.closed = True
        self._pool.shutdown(wait=False, cancel_futures=True)
        self._wake_reader()
        self.conn.close()


class AgentConnection:
    def __init__(self, host: str, port: int, handlers: Handlers,
                 retry_delay: float = RETRY_DELAY,
                 connect: Callable[[str, int], socket.socket] = open_connection,
                 sleep: Callable[[float], None] = time.sleep,
                 on_transition: Optional[Callable[[State], None]] = None,
                 max_workers: int = MAX_WORKERS):
        self.host = host
        self.port = port
        self.handlers = handlers
        self.retry_delay = retry_delay
        self.connect = connect
        self.sleep = sleep
        self.on_transition = on_transition
        self.max_workers = max_workers
        self.state = State.CONNECTING
        self.attempts = 0

    def _transition(self, state: State) -> None:
        logger.debug("%s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_transition is not None:
            self.on_transition(state)

    def run(self) -> None:
        """Connect and serve until the controller asks us to stop."""
        while True:
            self._transition(State.CONNECTING)
            self.attempts += 1
            try:
                conn = self.connect(self.host, self.port)
            except OSError as e:
                logger.warning("Cannot reach controller %s:%d: %s. Trying again in %s seconds",
                               self.host, self.port, e, self.retry_delay)
                self.sleep(self.retry_delay)
                continue

            logger.info("Connected to controller %s:%d", self.host, self.port)
            self._transition(State.SERVING)
            try:
                self.serve(conn)
            except TransportError as e:
                self._transition(State.FAILED)
                logger.warning("Lost connection to the server: %s. Trying again in %s seconds",
                               e, self.retry_delay)
                self.sleep(self.retry_delay)
                continue

            self._transition(State.TERMINATED)
            return

    def serve(self, conn: socket.socket) -> None:
        """
        Serve one connection.

        Returns normally on a disconnect request; raises TransportError when
        the stream breaks. Per-connection state is discarded either way.
        """
        link = Link(conn, self.max_workers)
        try:
            link.send(hello_message())
            while True:
                try:
                    msg = protocol.recv_message(conn)
                except ProtocolError as e:
                    # framing can no longer be trusted
                    try:
                        link.send(protocol.result(None, error=f"Malformed request: {e}"))
                    except TransportError:
                        pass
                    raise TransportError(f"protocol error: {e}") from e

                msg_type = msg["type"]
                if msg_type == protocol.DISCONNECT:
                    logger.info("Disconnect requested by controller")
                    return
                if msg_type == protocol.PING:
                    link.send(self.handlers.handle(msg))
                elif self.handlers.handles(msg_type):
                    link.submit(self.handlers.handle, msg)
                else:
                    link.send(protocol.result(msg.get("id"),
                                              error=f"Unknown request type {msg_type!r}"))
        finally:
            link.close()
