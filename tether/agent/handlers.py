"""
Local handlers for the requests an agent understands.

Each handler takes the request message and returns the reply message.
Failures are reported in the reply's "error" field; a handler never lets
an exception reach the connection loop.
"""

import getpass
import logging
import os
import platform
import shlex
import socket
import subprocess
import tempfile
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional
from urllib.parse import urlparse

import psutil
import requests

from .. import protocol
from ..errors import ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
# Worst case JSON escaping is 12 bytes per character, so this stays under one frame
MAX_OUTPUT_CHARS = 64 * 1024

# Informational commands only unless the operator of the agent extends it
COMMAND_ALLOWLIST = frozenset({
    # Linux/macOS
    "pwd", "ls", "whoami", "uname", "hostname", "id", "date", "uptime",
    # Windows
    "ver", "systeminfo", "ipconfig",
    # Cross-platform
    "echo",
})

SAFE_ENV = {
    'PATH': '/usr/bin:/bin:/usr/sbin:/sbin' if os.name != 'nt' else os.environ.get('PATH', ''),
    'HOME': os.environ.get('HOME', ''),
    'USER': os.environ.get('USER', ''),
}

Handler = Callable[[Dict], Dict]


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # no passwd entry, e.g. in containers
        return os.environ.get('USER', 'unknown')


def truncate(output: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(output) <= limit:
        return output
    return output[:limit] + f"\n[truncated: {limit} of {len(output)} characters shown]\n"


def hello_message() -> Dict:
    """System metadata sent as the handshake."""
    return {
        "type": protocol.HELLO,
        "os": platform.system(),
        "hostname": platform.node(),
        "user": current_user(),
        "pid": os.getpid(),
    }


class Handlers:
    def __init__(self, allowed_commands: Optional[FrozenSet[str]] = COMMAND_ALLOWLIST,
                 allow_download: bool = False, timeout: float = DEFAULT_TIMEOUT):
        # allowed_commands=None lifts the allowlist entirely
        self.allowed_commands = (None if allowed_commands is None
                                 else frozenset(c.lower() for c in allowed_commands))
        self.allow_download = allow_download
        self.timeout = timeout
        self._table: Dict[str, Handler] = {}

    def register(self, msg_type: str, handler: Handler) -> None:
        self._table[msg_type] = handler

    def handles(self, msg_type: str) -> bool:
        return msg_type in self._table

    def handle(self, msg: Dict) -> Dict:
        """Run the handler for a request; always returns a reply."""
        request_id = msg.get("id")
        handler = self._table.get(msg.get("type"))
        if handler is None:
            return protocol.result(request_id, error=f"Unsupported request type {msg.get('type')!r}")
        try:
            return handler(msg)
        except ProtocolError as e:
            return protocol.result(request_id, error=str(e),
                                   background=bool(msg.get("background")))
        except Exception as e:
            logger.exception("handler for %r failed", msg.get("type"))
            return protocol.result(request_id, error=f"Execution failed: {e}",
                                   background=bool(msg.get("background")))

    # ---- handlers -------------------------------------------------------

    def ping(self, msg: Dict) -> Dict:
        return {"type": protocol.PONG, "id": msg.get("id")}

    def run_command(self, msg: Dict) -> Dict:
        """Run an allowed command without a shell."""
        request_id = msg.get("id")
        background = bool(msg.get("background"))
        cmd = str(msg.get("cmd") or "").strip()
        if not cmd:
            return protocol.result(request_id, error="No command provided", background=background)

        argv = shlex.split(cmd) + protocol.string_list(msg.get("args"))
        base_cmd = os.path.basename(argv[0]).lower()
        if self.allowed_commands is not None and base_cmd not in self.allowed_commands:
            return protocol.result(request_id, error=f"Command '{base_cmd}' not allowed",
                                   background=background)
        return self._execute(request_id, argv, background)

    def download_and_execute(self, msg: Dict) -> Dict:
        """Fetch a resource over HTTP(S) and execute it with the given args."""
        request_id = msg.get("id")
        background = bool(msg.get("background"))
        if not self.allow_download:
            return protocol.result(request_id, error="Download-and-execute is disabled on this agent",
                                   background=background)
        url = str(msg.get("url") or "").strip()
        if urlparse(url).scheme not in ("http", "https"):
            return protocol.result(request_id, error=f"Unsupported URL: {url!r}",
                                   background=background)
        args = protocol.string_list(msg.get("args"))

        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            return protocol.result(request_id, error=f"Could not fetch {url}: {e}",
                                   background=background)

        suffix = os.path.splitext(urlparse(url).path)[1]
        fd, path = tempfile.mkstemp(prefix="tether-", suffix=suffix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(response.content)
            os.chmod(path, 0o700)
            logger.info("executing %s (%d bytes) from %s", path, len(response.content), url)
            return self._execute(request_id, [path] + args, background)
        finally:
            try:
                os.unlink(path)
            except OSError:
                logger.warning("could not remove %s", path)

    def system_info(self, msg: Dict) -> Dict:
        memory = psutil.virtual_memory()
        info = {
            "hostname": socket.gethostname(),
            "os": platform.system(),
            "release": platform.release(),
            "version": platform.version(),
            "arch": platform.machine(),
            "python": platform.python_version(),
            "user": current_user(),
            "pid": os.getpid(),
            "cpu_count": psutil.cpu_count(),
            "memory_total": memory.total,
            "memory_available": memory.available,
            "boot_time": datetime.fromtimestamp(psutil.boot_time()).isoformat(timespec="seconds"),
        }
        return protocol.result(msg.get("id"), info=info)

    def _execute(self, request_id, argv: List[str], background: bool) -> Dict:
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=SAFE_ENV,
            )
        except subprocess.TimeoutExpired:
            return protocol.result(request_id, error=f"Command timed out after {self.timeout}s",
                                   background=background)
        except FileNotFoundError:
            return protocol.result(request_id, error=f"Command '{argv[0]}' not found",
                                   background=background)
        except OSError as e:
            return protocol.result(request_id, error=f"Execution failed: {e}",
                                   background=background)

        error = f"Exit code: {proc.returncode}" if proc.returncode != 0 else None
        return protocol.result(request_id, truncate(proc.stdout + proc.stderr), error, background)


def default_handlers(**options) -> Handlers:
    """Handlers with every built-in request type registered."""
    handlers = Handlers(**options)
    handlers.register(protocol.PING, handlers.ping)
    handlers.register(protocol.RUN, handlers.run_command)
    handlers.register(protocol.DOWNLOAD_EXEC, handlers.download_and_execute)
    handlers.register(protocol.SYSINFO, handlers.system_info)
    return handlers
