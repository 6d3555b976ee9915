#!/usr/bin/env python3
"""
tether Agent
Lab use only.

Responsibilities:
- Connect to the controller and keep reconnecting while it is unreachable
- Report system metadata in the handshake
- Execute requests from the controller through the local handlers
- Exit only when the controller asks for a clean disconnect
"""

import argparse
import logging
import sys

from .. import __version__
from .connection import RETRY_DELAY, AgentConnection
from .handlers import COMMAND_ALLOWLIST, DEFAULT_TIMEOUT, default_handlers

DEFAULT_PORT = 4422


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="tether agent")
    parser.add_argument("--host", "-H", required=True,
                        help="Controller address")
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_PORT,
                        help=f"Controller port (default: {DEFAULT_PORT})")
    parser.add_argument("--retry-delay", type=float, default=RETRY_DELAY,
                        help=f"Seconds between connection attempts (default: {RETRY_DELAY})")
    parser.add_argument("--timeout", "-t", type=float, default=DEFAULT_TIMEOUT,
                        help=f"Seconds a command or download may take (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--allow", action="append", default=[], metavar="CMD",
                        help="Allow an extra command to be run (repeatable)")
    parser.add_argument("--allow-download", action="store_true",
                        help="Enable download-and-execute requests")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"[i] tether Agent v{__version__}")
    print("[i] For authorized lab use only.\n")

    handlers = default_handlers(
        allowed_commands=COMMAND_ALLOWLIST | set(args.allow),
        allow_download=args.allow_download,
        timeout=args.timeout,
    )
    agent = AgentConnection(args.host, args.port, handlers, retry_delay=args.retry_delay)
    try:
        agent.run()
    except KeyboardInterrupt:
        print("\n[i] Agent interrupted")
        sys.exit(130)
    print("[i] Disconnected by controller, exiting")
    sys.exit(0)


if __name__ == "__main__":
    main()
