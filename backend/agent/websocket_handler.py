"""
Agent WebSocket Handler

Handles WebSocket connections from agents on GET /ws.

Protocol Flow:
1. Agent connects to /ws?client_id=<id> with "Authorization: Bearer <credential>"
2. Backend verifies the credential is signed for that client_id and the agent exists;
   on failure the upgrade is refused (close code 1008) and nothing is registered
3. Connection accepted, session registered (replacing any previous session for the agent)
4. Queued commands are delivered, then the session runs until the transport fails,
   the agent goes silent, or the server shuts down

Message Types:
- Agent → Backend: heartbeat, result
- Backend → Agent: command
"""
import logging
import time
from typing import Callable, Optional

from fastapi import WebSocket

from agent.command_dispatcher import CommandDispatcher
from agent.manager import AgentManager
from agent.session import AgentSession
from agent.session_registry import SessionRegistry
from auth.credentials import verify_agent_credential
from auth.operator_auth import extract_bearer
from database import StorageError

logger = logging.getLogger(__name__)


class AgentWebSocketHandler:
    """Handles one agent WebSocket connection from handshake to close"""

    def __init__(
        self,
        websocket: WebSocket,
        registry: SessionRegistry,
        dispatcher: CommandDispatcher,
        agent_manager: AgentManager,
        verify: Callable[[str], Optional[str]] = verify_agent_credential,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.websocket = websocket
        self.registry = registry
        self.dispatcher = dispatcher
        self.agent_manager = agent_manager
        self.verify = verify
        self.clock = clock

    async def handle_connection(self) -> Optional[AgentSession]:
        """
        Handle complete WebSocket connection lifecycle.

        Returns:
            The session once it has closed, or None if the handshake was refused
        """
        client_id = self.websocket.query_params.get("client_id")
        credential = extract_bearer(self.websocket.headers.get("authorization"))

        if not client_id or not credential:
            logger.warning("Agent WebSocket connection attempted without client_id or credential")
            await self.websocket.close(code=1008, reason="Authentication required")
            return None

        session = AgentSession(
            client_id,
            self.websocket,
            registry=self.registry,
            dispatcher=self.dispatcher,
            agent_manager=self.agent_manager,
            clock=self.clock,
        )

        if not session.authenticate(credential, self.verify):
            await self.websocket.close(code=1008, reason="Invalid token")
            return None

        try:
            agent = self.agent_manager.get_agent(client_id)
        except StorageError:
            await self.websocket.close(code=1011, reason="Storage unavailable")
            return None

        if agent is None:
            logger.warning(f"Credential for unknown agent {client_id}, refusing connection")
            await self.websocket.close(code=1008, reason="Unknown agent")
            return None

        await self.websocket.accept()
        session.activate()
        await self.registry.register(client_id, session)

        address = self.websocket.client.host if self.websocket.client else None
        try:
            self.agent_manager.mark_connected(client_id, ip=address)
        except StorageError as e:
            logger.error(f"Could not mark agent {client_id} connected: {e}")

        logger.info(f"Agent {client_id} authenticated successfully from {address}")

        try:
            self.dispatcher.deliver_pending(client_id)
        except StorageError as e:
            logger.error(f"Could not deliver queued commands to agent {client_id}: {e}")

        await session.run()
        return session

