"""
Pydantic validation models and status enums for agent registration and command dispatch.

These models provide:
- Input validation (type checking, length limits)
- XSS protection (HTML tag sanitization on agent-supplied strings)
- Stable response shapes for the operator API
"""
import re
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict


class AgentStatus(str, Enum):
    """Lifecycle status of an agent (unregistered agents have no record)"""
    REGISTERED = "registered"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class CommandStatus(str, Enum):
    """Status of a command. Transitions only move forward."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentRegistrationRequest(BaseModel):
    """Validated agent registration request"""
    token: str = Field(min_length=1, max_length=255, description="Registration token")
    hostname: str = Field(min_length=1, max_length=255, description="System hostname")
    ip: Optional[str] = Field(None, max_length=45, description="Agent IP address (IPv4 or IPv6)")

    @field_validator('hostname', 'ip')
    @classmethod
    def sanitize_html(cls, v: Optional[str]) -> Optional[str]:
        """
        Sanitize agent-supplied strings before they are stored and shown to operators.

        Removes HTML tags (< >) and non-printable characters.
        """
        if v:
            v = re.sub(r'[<>]', '', v)
            v = ''.join(c for c in v if c.isprintable())
            v = v.strip()
        return v

    @field_validator('token')
    @classmethod
    def validate_token(cls, v: str) -> str:
        if not re.match(r'^[a-zA-Z0-9\-_]+$', v):
            raise ValueError("Token must contain only alphanumeric characters, hyphens and underscores")
        return v

    model_config = ConfigDict(extra='forbid')


class AgentRegistrationResponse(BaseModel):
    client_id: str
    token: str


class RegistrationTokenResponse(BaseModel):
    token: str
    expires_at: datetime


class CommandRequest(BaseModel):
    """Operator request to run a command on one agent"""
    client_id: str = Field(min_length=1, max_length=255)
    command: str = Field(min_length=1, max_length=64 * 1024)

    model_config = ConfigDict(extra='forbid')


class AgentInfo(BaseModel):
    id: str
    hostname: str
    ip: Optional[str] = None
    status: AgentStatus
    last_seen: Optional[datetime] = None
    registered_at: Optional[datetime] = None
    connected: bool = False

    @classmethod
    def from_record(cls, agent, connected: bool) -> "AgentInfo":
        return cls(
            id=agent.id,
            hostname=agent.hostname,
            ip=agent.ip,
            status=agent.status,
            last_seen=agent.last_seen_at,
            registered_at=agent.registered_at,
            connected=connected,
        )


class CommandInfo(BaseModel):
    id: str
    client_id: str
    command: str
    status: CommandStatus
    result: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, command) -> "CommandInfo":
        return cls(
            id=command.id,
            client_id=command.agent_id,
            command=command.command,
            status=command.status,
            result=command.result,
            error=command.error,
            created_at=command.created_at,
            dispatched_at=command.dispatched_at,
            completed_at=command.completed_at,
        )


class SubmittedCommand(CommandInfo):
    """Response to a submission; delivered is False when the command was left pending"""
    delivered: bool = False
