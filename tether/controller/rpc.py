"""
Remote command RPC over a session's stream.

Each session gets one reader thread that owns all inbound traffic and
routes replies by request id:
- foreground calls wait on a Future, one at a time per session (FIFO);
- background calls return immediately and their results go to the
  OutputSink, attributed to the session.

Any stream failure flags the session in the Registry and surfaces to the
caller as NotConnected, never as a raw transport error.
"""

import logging
import socket
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Union

from .. import protocol
from ..errors import (
    CommandTimeout,
    NotConnected,
    ProtocolError,
    RemoteExecutionError,
    TetherError,
    TransportError,
)
from .output import BackgroundResult, OutputSink
from .registry import Registry, SessionNotFound
from .session import Session

logger = logging.getLogger(__name__)

DEFAULT_PING_TIMEOUT = 10.0

Target = Union[Session, int]


@dataclass
class RunHandle:
    session_id: int
    request_id: int
    background: bool
    output: Optional[str] = None


class RemoteCommands:
    def __init__(self, registry: Registry, sink: OutputSink,
                 ping_timeout: Optional[float] = DEFAULT_PING_TIMEOUT,
                 command_timeout: Optional[float] = None):
        self.registry = registry
        self.sink = sink
        self.ping_timeout = ping_timeout
        self.command_timeout = command_timeout

    # ---- inbound --------------------------------------------------------

    def attach(self, session: Session) -> threading.Thread:
        """Start the reader that owns the session's inbound traffic."""
        thread = threading.Thread(
            target=self._read_loop,
            args=(session,),
            name=f"session-{session.id}-reader",
            daemon=True,
        )
        thread.start()
        return thread

    def _read_loop(self, session: Session) -> None:
        reason = "connection lost"
        try:
            while True:
                self._route(session, protocol.recv_message(session.conn))
        except TransportError as e:
            reason = str(e)
            logger.debug("client %d reader stopped: %s", session.id, e)
        except ProtocolError as e:
            reason = f"protocol error: {e}"
            logger.warning("client %d sent a malformed frame: %s", session.id, e)
        finally:
            self._fail(session, reason)

    def _route(self, session: Session, msg: Dict) -> None:
        request_id = msg.get("id")
        future, background = session.claim(request_id)
        if future is not None:
            future.set_result(msg)
        elif background:
            output, error = msg.get("output") or "", msg.get("error")
            if not isinstance(output, str) or not isinstance(error, (str, type(None))):
                output, error = "", "malformed result from client"
            self.sink.publish(BackgroundResult(session.id, request_id, output, error))
        else:
            logger.warning("client %d: uncorrelated %r reply (id=%r) dropped",
                           session.id, msg.get("type"), request_id)

    def _fail(self, session: Session, reason: str) -> None:
        # connected flips before drain, so late expect() calls see it
        self.registry.mark_disconnected(session)
        session.close()
        pending, background = session.drain()
        for future in pending.values():
            if not future.done():
                future.set_exception(NotConnected(session.id, reason))
        for request_id in sorted(background):
            self.sink.publish(BackgroundResult(
                session.id, request_id, "", f"connection lost before result ({reason})"))

    # ---- outbound -------------------------------------------------------

    def _target(self, target: Target) -> Session:
        if isinstance(target, Session):
            session = target
        else:
            try:
                session = self.registry.lookup(int(target))
            except SessionNotFound:
                raise NotConnected(target, "no such client") from None
        if not session.connected:
            raise NotConnected(session.id)
        return session

    def _send(self, session: Session, msg: Dict) -> None:
        try:
            with session.send_lock:
                protocol.send_message(session.conn, msg)
        except TransportError as e:
            self._fail(session, str(e))
            raise NotConnected(session.id, "connection lost") from e

    def _call(self, session: Session, msg_type: str, timeout: Optional[float],
              **fields) -> Tuple[Dict, float]:
        """Foreground round trip. Returns the reply and its latency in seconds."""
        with session.foreground:
            if not session.connected:
                raise NotConnected(session.id)
            request_id = session.next_request_id()
            future = session.expect(request_id)
            try:
                if not session.connected:
                    raise NotConnected(session.id)
                started = time.monotonic()
                self._send(session, protocol.request(msg_type, request_id, **fields))
                try:
                    reply = future.result(timeout=timeout)
                except FutureTimeout:
                    raise CommandTimeout(
                        f"Client {session.id}: no reply to {msg_type} within {timeout}s") from None
                return reply, time.monotonic() - started
            finally:
                session.forget(request_id)

    @staticmethod
    def _check(session: Session, reply: Dict, expected: str) -> Dict:
        if reply.get("type") != expected:
            raise ProtocolError(
                f"Client {session.id}: expected {expected!r} reply, got {reply.get('type')!r}")
        if not isinstance(reply.get("output") or "", str):
            raise ProtocolError(f"Client {session.id}: reply output is not text")
        if reply.get("error"):
            message = f"Client {session.id}: {reply['error']}"
            if reply.get("output"):
                message += "\n" + reply["output"].rstrip("\n")
            raise RemoteExecutionError(message)
        return reply

    # ---- operations -----------------------------------------------------

    def ping(self, target: Target, timeout: Optional[float] = None) -> float:
        """Round-trip time to the agent, in seconds."""
        session = self._target(target)
        reply, elapsed = self._call(session, protocol.PING, timeout or self.ping_timeout)
        self._check(session, reply, protocol.PONG)
        return elapsed

    def run_command(self, target: Target, command_line: str, args: Sequence[str] = (),
                    background: bool = False, timeout: Optional[float] = None) -> RunHandle:
        """
        Run a process on the agent.

        Foreground calls queue behind any other foreground call on the same
        session and return the output. Background calls return at once; the
        result is published to the OutputSink when it arrives.
        """
        session = self._target(target)
        fields = {"cmd": command_line, "args": list(args)}
        if not background:
            reply, _ = self._call(session, protocol.RUN, timeout or self.command_timeout,
                                  background=False, **fields)
            self._check(session, reply, protocol.RESULT)
            return RunHandle(session.id, reply["id"], False, reply.get("output") or "")

        request_id = session.next_request_id()
        session.expect_background(request_id)
        if not session.connected:
            session.forget(request_id)
            raise NotConnected(session.id)
        try:
            self._send(session, protocol.request(protocol.RUN, request_id, background=True, **fields))
        except TetherError:
            session.forget(request_id)
            raise
        logger.debug("client %d: background job %d started", session.id, request_id)
        return RunHandle(session.id, request_id, True)

    def download_and_execute(self, target: Target, url: str, args: Sequence[str] = (),
                             timeout: Optional[float] = None) -> str:
        session = self._target(target)
        reply, _ = self._call(session, protocol.DOWNLOAD_EXEC, timeout or self.command_timeout,
                              url=url, args=list(args), background=False)
        return self._check(session, reply, protocol.RESULT).get("output") or ""

    def get_system_info(self, target: Target, timeout: Optional[float] = None) -> Dict:
        session = self._target(target)
        reply, _ = self._call(session, protocol.SYSINFO, timeout or self.command_timeout)
        info = self._check(session, reply, protocol.RESULT).get("info")
        if not isinstance(info, dict):
            raise ProtocolError(f"Client {session.id}: system info reply has no info")
        return info

    def disconnect(self, target: Target) -> None:
        """
        Ask the agent to shut down cleanly, then drop the session.

        Only the write side is shut here; the reader closes the stream once
        the agent hangs up, so the request is never cut off by a reset.
        """
        session = self._target(target)
        self._send(session, {"type": protocol.DISCONNECT})
        self.registry.mark_disconnected(session, close=False)
        try:
            session.conn.shutdown(socket.SHUT_WR)
        except OSError:
            pass  # already gone
