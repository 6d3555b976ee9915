"""Fake agents and polling helpers shared by the tests."""

import socket
import threading
import time

from tether import protocol
from tether.errors import TetherError


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeAgent:
    """Scripted agent on the far end of a socketpair."""

    HANG_UP = object()

    def __init__(self, conn: socket.socket, respond):
        self.conn = conn
        self.respond = respond
        self.received = []
        self.thread = threading.Thread(target=self._loop, daemon=True)
        self.thread.start()

    def _loop(self):
        while True:
            try:
                msg = protocol.recv_message(self.conn)
            except TetherError:
                return
            self.received.append(msg)
            reply = self.respond(msg)
            if reply is FakeAgent.HANG_UP:
                self.close()
                return
            if reply is not None:
                self.send(reply)

    def send(self, msg):
        try:
            protocol.send_message(self.conn, msg)
        except TetherError:
            pass  # controller already hung up

    def close(self):
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.conn.close()


def echo_reply(msg):
    """Answer every request immediately, echoing run commands."""
    msg_type = msg["type"]
    if msg_type == protocol.PING:
        return {"type": protocol.PONG, "id": msg["id"]}
    if msg_type == protocol.RUN:
        output = " ".join([msg["cmd"]] + msg["args"]) + "\n"
        return protocol.result(msg["id"], output, background=msg["background"])
    if msg_type == protocol.SYSINFO:
        return protocol.result(msg["id"], info={"hostname": "lab", "os": "Linux"})
    if msg_type == protocol.DOWNLOAD_EXEC:
        return protocol.result(msg["id"], f"ran {msg['url']}\n")
    return None
