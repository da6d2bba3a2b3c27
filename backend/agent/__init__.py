"""
Agent session package for the command server.

Handles agent registration, authentication, live session tracking,
heartbeat liveness and command dispatch over the agent WebSocket.
"""
from .session_registry import SessionRegistry
from .session import AgentSession, SessionState
from .command_dispatcher import CommandDispatcher, AgentNotFoundError
from .heartbeat_monitor import HeartbeatMonitor
from .manager import AgentManager
from .websocket_handler import AgentWebSocketHandler

__all__ = [
    'SessionRegistry',
    'AgentSession',
    'SessionState',
    'CommandDispatcher',
    'AgentNotFoundError',
    'HeartbeatMonitor',
    'AgentManager',
    'AgentWebSocketHandler',
]
