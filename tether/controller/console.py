"""
Operator console.

Reads a line, dispatches it through the command table and prints the
returned text. Background results are written from another thread, so all
output goes through one lock.
"""

import sys
import threading
from typing import Callable, Optional, TextIO

from .capture import CaptureResolver
from .commands import CommandTable, default_commands
from .registry import Registry
from .rpc import RemoteCommands

PROMPT = "tether> "


class Console:
    def __init__(self, registry: Registry, rpc: RemoteCommands,
                 commands: Optional[CommandTable] = None, stdout: Optional[TextIO] = None):
        self.registry = registry
        self.rpc = rpc
        self.resolver = CaptureResolver(registry)
        self.commands = commands or default_commands()
        self.stdout = stdout or sys.stdout
        self.running = True
        self._write_lock = threading.Lock()

    def write(self, text: str) -> None:
        """Print text, adding the trailing newline if it's missing."""
        if not text:
            return
        if not text.endswith("\n"):
            text += "\n"
        with self._write_lock:
            self.stdout.write(text)
            self.stdout.flush()

    def clear(self) -> None:
        with self._write_lock:
            self.stdout.write("\033[2J\033[H")
            self.stdout.flush()

    def stop(self) -> None:
        self.running = False

    def execute(self, line: str) -> str:
        return self.commands.dispatch(self, line)

    def loop(self, read: Callable[[str], str] = input) -> None:
        """Interactive loop; returns on 'exit' or end of input."""
        while self.running:
            try:
                line = read(PROMPT)
            except EOFError:
                break
            except KeyboardInterrupt:
                self.write("\n[i] Use 'exit' to quit.")
                continue
            self.write(self.execute(line))
