"""
Error kinds shared by the controller and the agent.

Transport failures are converted to NotConnected at the registry boundary,
so operator-facing code only ever sees the TetherError subclasses below.
"""


class TetherError(Exception):
    """Base class for every error raised by tether."""


class TransportError(TetherError):
    """Stream open/read/write failure."""


class ConnectionClosed(TransportError):
    """The peer closed the stream."""


class NotConnected(TetherError):
    """The targeted session is gone or its stream failed mid-call."""

    def __init__(self, session_id, reason: str = "not connected"):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Client {session_id}: {reason}")


class NoMatch(TetherError):
    """A capture expression resolved to no sessions."""


class RemoteExecutionError(TetherError):
    """The agent reported a failure running a command or resource."""


class ProtocolError(TetherError):
    """Malformed frame or a reply that matches no request."""


class CommandTimeout(TetherError):
    """A caller-imposed deadline expired before the reply arrived."""


class CommandConfigError(TetherError):
    """Console command table is inconsistent (name/alias collision)."""
