"""
tether Protocol Definitions (Shared)
Message schemas and framing for controller-agent communication.

All messages are JSON objects with a "type" field, sent as one frame each:
<4-byte big-endian length><UTF-8 JSON body>
"""

import json
import socket
import struct
from typing import Dict, List, Optional

from .errors import ConnectionClosed, ProtocolError, TransportError

MAX_MESSAGE_SIZE = 1024 * 1024  # 1MB max
HEADER = struct.Struct(">I")

# Agent → Controller (Handshake, always the first frame)
# {"type": "hello", "os": "Linux", "hostname": "lab-ubuntu", "user": "student", "pid": 1234}
HELLO = "hello"

# Controller → Agent
# {"type": "ping", "id": 1}
# {"type": "run", "id": 2, "cmd": "uname", "args": ["-a"], "background": false}
# {"type": "download_exec", "id": 3, "url": "http://lab/tool.sh", "args": [], "background": false}
# {"type": "sysinfo", "id": 4}
# {"type": "disconnect"}
PING = "ping"
RUN = "run"
DOWNLOAD_EXEC = "download_exec"
SYSINFO = "sysinfo"
DISCONNECT = "disconnect"

# Agent → Controller (Replies, correlated by "id")
# {"type": "pong", "id": 1}
# {"type": "result", "id": 2, "output": "Linux lab 6.1 ...", "error": null, "background": false}
# {"type": "result", "id": 4, "output": "", "error": null, "info": {"hostname": "lab", ...}}
PONG = "pong"
RESULT = "result"

REQUEST_TYPES = (PING, RUN, DOWNLOAD_EXEC, SYSINFO)


def encode_message(msg: Dict) -> bytes:
    """Serialize a message into a single length-prefixed frame."""
    body = json.dumps(msg, separators=(',', ':')).encode('utf-8')
    if len(body) > MAX_MESSAGE_SIZE:
        raise ProtocolError(f"Message too large ({len(body)} bytes)")
    return HEADER.pack(len(body)) + body


def decode_body(body: bytes) -> Dict:
    """Parse a frame body, rejecting anything that is not a typed message."""
    try:
        msg = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"Malformed frame: {e}") from e
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        raise ProtocolError("Malformed frame: missing message type")
    return msg


def send_message(conn: socket.socket, msg: Dict) -> None:
    """Write one message. Raises TransportError if the stream fails."""
    frame = encode_message(msg)
    try:
        conn.sendall(frame)
    except OSError as e:
        raise TransportError(f"send failed: {e}") from e


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        try:
            chunk = conn.recv(size - len(buf))
        except OSError as e:
            raise TransportError(f"recv failed: {e}") from e
        if not chunk:
            raise ConnectionClosed("connection closed by peer")
        buf.extend(chunk)
    return bytes(buf)


def recv_message(conn: socket.socket) -> Dict:
    """
    Read exactly one message.

    Raises ConnectionClosed on EOF, TransportError on socket errors and
    ProtocolError on a malformed frame.
    """
    (msg_len,) = HEADER.unpack(_recv_exact(conn, HEADER.size))
    if msg_len > MAX_MESSAGE_SIZE:
        raise ProtocolError(f"Message too large ({msg_len} bytes)")
    return decode_body(_recv_exact(conn, msg_len))


def request(msg_type: str, request_id: int, **fields) -> Dict:
    """Build a controller → agent request."""
    msg = {"type": msg_type, "id": request_id}
    msg.update(fields)
    return msg


def result(request_id: Optional[int], output: str = "", error: Optional[str] = None,
           background: bool = False, info: Optional[Dict] = None) -> Dict:
    """Build an agent → controller result."""
    msg = {
        "type": RESULT,
        "id": request_id,
        "output": output,
        "error": error,
        "background": background,
    }
    if info is not None:
        msg["info"] = info
    return msg


def string_list(value) -> List[str]:
    """Coerce an "args" field into a list of strings."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProtocolError("args must be a list")
    return [str(v) for v in value]
