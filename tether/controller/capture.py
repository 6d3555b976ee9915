"""
Capture expressions: operator text → target sessions.

Grammar:
    capture := "all" | "*" | item ("," item)*
    item    := ID | ID "-" ID

"all" expands to the connected sessions. Explicit ids and ranges name
sessions whatever their state, so a command against a dead client reports
it as not connected instead of silently skipping it.
"""

import re
from typing import List, Tuple

from ..errors import NoMatch
from .registry import Registry
from .session import Session

ALL_TOKENS = ("all", "*")
_ITEM = re.compile(r"^(\d+)(?:-(\d+))?$")


def parse(token: str) -> List[Tuple[int, int]]:
    """Parse an id list/range expression into inclusive (start, end) pairs."""
    ranges: List[Tuple[int, int]] = []
    for item in token.split(","):
        match = _ITEM.match(item.strip())
        if not match:
            raise NoMatch(f"Invalid capture: {token!r}")
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else start
        if end < start:
            raise NoMatch(f"Invalid capture range: {item.strip()!r}")
        ranges.append((start, end))
    return ranges


class CaptureResolver:
    def __init__(self, registry: Registry):
        self.registry = registry

    def resolve(self, token: str, include_disconnected: bool = False) -> List[Session]:
        """Resolve a capture token. Raises NoMatch instead of returning []."""
        token = (token or "").strip().lower()
        if not token:
            raise NoMatch("No clients specified")

        snapshot = self.registry.list()
        if token in ALL_TOKENS:
            sessions = [s for s, connected in snapshot if connected or include_disconnected]
            if not sessions:
                raise NoMatch("No connected clients")
            return sessions

        ranges = parse(token)
        sessions = [s for s, _ in snapshot
                    if any(start <= s.id <= end for start, end in ranges)]
        if not sessions:
            raise NoMatch(f"No clients match {token!r}")
        return sessions
