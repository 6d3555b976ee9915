from .connection import AgentConnection, State
from .handlers import Handlers, default_handlers

__all__ = ["AgentConnection", "Handlers", "State", "default_handlers"]
