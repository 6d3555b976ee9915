from .registry import Registry, SessionNotFound
from .session import Session
from .capture import CaptureResolver
from .output import BackgroundResult, OutputSink
from .rpc import RemoteCommands, RunHandle

__all__ = [
    "BackgroundResult",
    "CaptureResolver",
    "OutputSink",
    "Registry",
    "RemoteCommands",
    "RunHandle",
    "Session",
    "SessionNotFound",
]
