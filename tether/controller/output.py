"""
Delivery of background command results to the operator.

Readers publish results here as they arrive; one printer thread drains the
queue so the caller that started the command never waits for it.
"""

import queue
import threading
from typing import Callable, NamedTuple, Optional


class BackgroundResult(NamedTuple):
    session_id: int
    request_id: int
    output: str
    error: Optional[str] = None

    def render(self) -> str:
        header = f"[*] Client {self.session_id} (job {self.request_id})"
        lines = [header + (" failed: " + self.error if self.error else ":")]
        if self.output:
            lines.append(self.output.rstrip("\n"))
        return "\n".join(lines)


class OutputSink:
    def __init__(self):
        self.queue: "queue.Queue[BackgroundResult]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def publish(self, result: BackgroundResult) -> None:
        self.queue.put(result)

    def get(self, timeout: Optional[float] = None) -> BackgroundResult:
        return self.queue.get(timeout=timeout)

    def start(self, write: Callable[[str], None]) -> threading.Thread:
        """Print every published result through `write` on a daemon thread."""
        def drain():
            while True:
                write(self.queue.get().render())

        self._thread = threading.Thread(target=drain, name="output-sink", daemon=True)
        self._thread.start()
        return self._thread
