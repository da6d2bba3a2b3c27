"""
Agent wire protocol

Envelopes exchanged over the persistent agent WebSocket, one JSON object per text frame:

- Agent → Coordinator heartbeat: {"type": "heartbeat", "client_id": "<id>", "timestamp": <unix-seconds>}
- Coordinator → Agent command:   {"id": "<cmd-id>", "command": "<text>"}
- Agent → Coordinator result:    {"command_id": "<cmd-id>", "status": "success"|"error",
                                  "result": "<text>", "error": "<text, optional>"}

Commands and results carry no "type" field; they are told apart by their keys.
"""
import json
import logging
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

# Frames larger than this are rejected without parsing
MAX_ENVELOPE_BYTES = 1024 * 1024


class EnvelopeDecodeError(ValueError):
    """Raised when a frame is not a well-formed envelope"""


class HeartbeatEnvelope(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"
    client_id: str = Field(min_length=1, max_length=255)
    timestamp: int

    model_config = ConfigDict(extra='ignore')


class CommandEnvelope(BaseModel):
    id: str = Field(min_length=1, max_length=255)
    command: str

    model_config = ConfigDict(extra='ignore')


class ResultEnvelope(BaseModel):
    command_id: str = Field(min_length=1, max_length=255)
    status: Literal["success", "error"]
    result: str = ""
    error: Optional[str] = None

    model_config = ConfigDict(extra='ignore')


Envelope = Union[HeartbeatEnvelope, CommandEnvelope, ResultEnvelope]


def decode_envelope(raw: Union[str, bytes]) -> Envelope:
    """
    Parse a text frame into an envelope.

    Raises:
        EnvelopeDecodeError: frame is oversized, not JSON, not an object, or
            does not match any envelope shape
    """
    if isinstance(raw, bytes):
        if len(raw) > MAX_ENVELOPE_BYTES:
            raise EnvelopeDecodeError(f"Envelope too large ({len(raw)} bytes)")
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise EnvelopeDecodeError(f"Envelope is not valid UTF-8: {e}") from e
    elif len(raw) > MAX_ENVELOPE_BYTES:
        raise EnvelopeDecodeError(f"Envelope too large ({len(raw)} characters)")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise EnvelopeDecodeError(f"Envelope is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise EnvelopeDecodeError(f"Envelope must be a JSON object, got {type(data).__name__}")

    msg_type = data.get("type")
    try:
        if msg_type == "heartbeat":
            return HeartbeatEnvelope.model_validate(data)
        if msg_type is not None:
            raise EnvelopeDecodeError(f"Unknown envelope type: {msg_type!r}")
        if "command_id" in data:
            return ResultEnvelope.model_validate(data)
        if "id" in data and "command" in data:
            return CommandEnvelope.model_validate(data)
    except ValidationError as e:
        raise EnvelopeDecodeError(f"Invalid envelope: {e.error_count()} validation error(s)") from e

    raise EnvelopeDecodeError(f"Unrecognized envelope with keys {sorted(data.keys())}")


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to a compact JSON text frame"""
    return envelope.model_dump_json(exclude_none=True)
