"""
Agent manager for registration, authentication, and lifecycle management.

Handles:
- Registration token generation and validation (single use, 15-minute expiry by default)
- Agent registration: token exchange for an agent ID and a signed credential
- Agent status projection in the store (registered / connected / disconnected)
"""
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from agent.models import AgentStatus
from auth.credentials import issue_agent_credential
from database import Agent, DatabaseManager, RegistrationToken, as_utc, utcnow

logger = logging.getLogger(__name__)


class AgentManager:
    """Manages agent registration and lifecycle"""

    def __init__(
        self,
        db: DatabaseManager,
        token_ttl_minutes: int = 15,
        credential_issuer: Callable[[str], str] = issue_agent_credential,
    ):
        self.db = db
        self.token_ttl = timedelta(minutes=token_ttl_minutes)
        self.credential_issuer = credential_issuer

    def generate_registration_token(self) -> RegistrationToken:
        """
        Generate a single-use registration token.

        Returns:
            RegistrationToken: Created token record
        """
        now = utcnow()
        token = secrets.token_urlsafe(24)

        record = self.db.add_registration_token(token, expires_at=now + self.token_ttl)
        logger.info(f"Created registration token {token[:8]}... (expires: {record.expires_at})")
        return record

    def validate_registration_token(self, token: str) -> bool:
        """
        Validate registration token is known, unused, and not expired.

        Args:
            token: Token string to validate

        Returns:
            bool: True if valid, False otherwise
        """
        record = self.db.get_registration_token(token)

        if not record:
            logger.warning(f"Token {token[:8]}... not found in database")
            return False

        if record.used:
            logger.warning(f"Token {token[:8]}... already used")
            return False

        if as_utc(record.expires_at) <= utcnow():
            logger.warning(f"Token {token[:8]}... expired at {record.expires_at}")
            return False

        return True

    def register_agent(self, token: str, hostname: str, ip: Optional[str]) -> Dict[str, Any]:
        """
        Register a new agent with token-based authentication.

        Creates the agent record with status 'registered', marks the token used
        and issues the credential the agent presents on every connect.

        Returns:
            Dict with:
                - success: bool
                - client_id: str (on success)
                - token: str, the agent credential (on success)
                - error: str (on failure)
        """
        if not self.validate_registration_token(token):
            return {"success": False, "error": "Invalid registration token"}

        agent_id = str(uuid.uuid4())

        # Atomic single use: two agents racing on one token can't both win
        if not self.db.consume_registration_token(token, agent_id):
            logger.warning(f"Token {token[:8]}... was consumed concurrently")
            return {"success": False, "error": "Invalid registration token"}

        self.db.add_agent(agent_id, hostname=hostname, ip=ip, status=AgentStatus.REGISTERED.value)
        credential = self.credential_issuer(agent_id)

        logger.info(f"Registered agent {agent_id} (hostname: {hostname}, ip: {ip})")
        return {"success": True, "client_id": agent_id, "token": credential}

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.db.get_agent(agent_id)

    def list_agents(self) -> List[Agent]:
        return self.db.get_agents()

    def mark_connected(self, agent_id: str, ip: Optional[str] = None):
        updates = {"status": AgentStatus.CONNECTED.value, "last_seen_at": utcnow()}
        if ip:
            updates["ip"] = ip
        self.db.update_agent(agent_id, **updates)
        logger.info(f"Agent {agent_id} marked connected")

    def mark_seen(self, agent_id: str):
        """Heartbeat received: refresh last_seen and confirm connected"""
        self.db.update_agent(agent_id, status=AgentStatus.CONNECTED.value, last_seen_at=utcnow())

    def mark_disconnected(self, agent_id: str):
        self.db.update_agent(agent_id, status=AgentStatus.DISCONNECTED.value, last_seen_at=utcnow())
        logger.info(f"Agent {agent_id} marked disconnected")
