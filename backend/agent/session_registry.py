"""
Agent Session Registry

Single source of truth for "is this agent reachable right now".

Architecture:
- Maps agent_id to the one live AgentSession for that agent
- register() atomically replaces any prior session, then closes the old one
- remove() is compare-and-delete: a stale session's close handler can never
  evict the newer session that replaced it
- Callers never touch the underlying dict directly
"""
import asyncio
import logging
from typing import Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from agent.session import AgentSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Concurrency-safe mapping of agent_id to its current live session"""

    def __init__(self):
        self._sessions: Dict[str, 'AgentSession'] = {}
        self._lock = asyncio.Lock()

    async def register(self, agent_id: str, session: 'AgentSession') -> Optional['AgentSession']:
        """
        Install a session for an agent, replacing and closing any prior one.

        The swap happens under the lock; the old session is closed after the
        lock is released because its close path calls remove(), which is a
        no-op by then since the entry already points at the new session.

        Returns:
            The replaced session, if there was one
        """
        async with self._lock:
            previous = self._sessions.get(agent_id)
            self._sessions[agent_id] = session

        if previous is not None and previous is not session:
            logger.info(f"Replacing existing session for agent {agent_id}")
            await previous.close(reason="Replaced by new connection")
        else:
            previous = None

        logger.info(f"Agent {agent_id} session registered. Total sessions: {len(self._sessions)}")
        return previous

    async def remove(self, agent_id: str, session: 'AgentSession') -> bool:
        """
        Delete the entry only if it still points at this session.

        Returns:
            bool: True if the entry was removed
        """
        async with self._lock:
            if self._sessions.get(agent_id) is not session:
                return False
            del self._sessions[agent_id]

        logger.info(f"Agent {agent_id} session removed. Total sessions: {len(self._sessions)}")
        return True

    def lookup(self, agent_id: str) -> Optional['AgentSession']:
        """Get the live session for an agent, or None"""
        return self._sessions.get(agent_id)

    def is_connected(self, agent_id: str) -> bool:
        return agent_id in self._sessions

    def sessions(self) -> List['AgentSession']:
        """Snapshot of all registered sessions"""
        return list(self._sessions.values())

    def get_connected_agent_ids(self) -> List[str]:
        return list(self._sessions.keys())

    def __len__(self) -> int:
        return len(self._sessions)

    async def close_all(self, reason: str = "Server shutting down"):
        """Close every registered session (process shutdown)"""
        for session in self.sessions():
            await session.close(reason=reason)
