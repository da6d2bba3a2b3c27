"""
Agent-side runtime for the command server.

Registers once, then keeps a single WebSocket to the server alive,
sending heartbeats and executing dispatched commands.
"""
from .backoff import BackoffPolicy, ConstantBackoff, ExponentialBackoff, build_backoff
from .client import AgentClient, RegistrationError
from .executor import ShellExecutor
from .supervisor import ConnectionState, ReconnectionSupervisor

__all__ = [
    'BackoffPolicy',
    'ConstantBackoff',
    'ExponentialBackoff',
    'build_backoff',
    'AgentClient',
    'RegistrationError',
    'ShellExecutor',
    'ConnectionState',
    'ReconnectionSupervisor'
]
