"""
Agent Session (coordinator side)

One live, authenticated WebSocket connection to one agent.

Lifecycle:
    authenticating -> active -> closing -> closed
    authenticating -> closed            (failed authentication, never registered)

While active two tasks share the transport:
- inbound loop: decodes envelopes and dispatches them by type
  (heartbeat -> liveness timestamp, result -> CommandDispatcher)
- outbound loop: drains the command queue and writes each envelope

Any transport error on either loop, an explicit close(), or a heartbeat
timeout runs the same close path: cancel both loops, compare-and-delete from
the SessionRegistry, mark the agent disconnected, fail commands that never
left the queue. A closed session is never reused.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional, TYPE_CHECKING

from database import StorageError
from protocol import (
    CommandEnvelope,
    EnvelopeDecodeError,
    HeartbeatEnvelope,
    ResultEnvelope,
    decode_envelope,
    encode_envelope,
)

if TYPE_CHECKING:
    from agent.command_dispatcher import CommandDispatcher
    from agent.manager import AgentManager
    from agent.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class SessionState(Enum):
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class AgentSession:
    """Live transport bound to exactly one agent"""

    def __init__(
        self,
        agent_id: str,
        websocket,
        registry: 'SessionRegistry',
        dispatcher: 'CommandDispatcher',
        agent_manager: 'AgentManager',
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            agent_id: Agent ID claimed by the connecting client
            websocket: Starlette/FastAPI WebSocket (anything with receive/send_text/close)
            registry: Registry this session will be installed in
            dispatcher: Receives results and undelivered commands
            agent_manager: Writes the agent's status projection to the store
            clock: Monotonic clock shared with the HeartbeatMonitor
        """
        self.agent_id = agent_id
        self.websocket = websocket
        self.registry = registry
        self.dispatcher = dispatcher
        self.agent_manager = agent_manager
        self._clock = clock

        self._state = SessionState.AUTHENTICATING
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._write_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._undelivered: List[str] = []
        self._closed = asyncio.Event()
        self.last_heartbeat: float = self._clock()
        self.close_reason: Optional[str] = None

    def __repr__(self) -> str:
        return f"<AgentSession agent={self.agent_id} state={self._state.value}>"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == SessionState.ACTIVE

    def authenticate(self, credential: Optional[str], verify: Callable[[str], Optional[str]]) -> bool:
        """
        Check the presented credential against the claimed agent ID.

        On failure the session goes straight to closed; it is never registered.
        """
        if self._state != SessionState.AUTHENTICATING:
            raise RuntimeError(f"Cannot authenticate session in state {self._state.value}")

        verified_agent_id = verify(credential) if credential else None
        if not self.agent_id or verified_agent_id != self.agent_id:
            logger.warning(f"Agent authentication failed for claimed id {self.agent_id!r}")
            self._state = SessionState.CLOSED
            self.close_reason = "Authentication failed"
            self._closed.set()
            return False

        return True

    def activate(self):
        """Authenticated and accepted: start accepting commands"""
        if self._state != SessionState.AUTHENTICATING:
            raise RuntimeError(f"Cannot activate session in state {self._state.value}")
        self._state = SessionState.ACTIVE
        self.last_heartbeat = self._clock()

    def seconds_since_heartbeat(self, now: Optional[float] = None) -> float:
        if now is None:
            now = self._clock()
        return now - self.last_heartbeat

    def send_command(self, envelope: CommandEnvelope) -> bool:
        """
        Queue a command for the outbound loop.

        Returns:
            bool: False if the session is no longer active
        """
        if self._state != SessionState.ACTIVE:
            return False
        self._outbound.put_nowait(envelope)
        return True

    async def run(self):
        """Run the inbound and outbound loops until either ends, then close"""
        if self._state != SessionState.ACTIVE:
            return

        reader = asyncio.create_task(self._read_loop(), name=f"session-read-{self.agent_id}")
        writer = asyncio.create_task(self._write_loop(), name=f"session-write-{self.agent_id}")
        self._tasks = [reader, writer]

        reason = "Agent disconnected"
        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                error = task.exception()
                if error is not None:
                    logger.warning(f"Transport error for agent {self.agent_id}: {error!r}")
                    reason = "Transport error"
        finally:
            # Shielded: if the endpoint task is cancelled the close path must still finish
            await asyncio.shield(self.close(reason=reason))

    async def close(self, reason: str = "Session closed", code: int = 1000):
        """
        Close the session. Idempotent; concurrent callers wait for the first one.
        """
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            await self._closed.wait()
            return

        self._state = SessionState.CLOSING
        self.close_reason = reason
        logger.info(f"Closing session for agent {self.agent_id}: {reason}")

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        removed = await self.registry.remove(self.agent_id, self)

        # No await between remove() and this write, so a successor registered
        # while the websocket closes keeps its connected status
        if removed:
            try:
                self.agent_manager.mark_disconnected(self.agent_id)
            except StorageError as e:
                logger.error(f"Could not mark agent {self.agent_id} disconnected: {e}")

        try:
            async with self._write_lock:
                await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            # Transport already gone
            logger.debug(f"Error closing websocket for agent {self.agent_id}: {e}")

        undelivered = list(self._undelivered)
        while not self._outbound.empty():
            undelivered.append(self._outbound.get_nowait().id)
        self._undelivered.clear()

        if undelivered:
            try:
                self.dispatcher.fail_undelivered(undelivered)
            except StorageError as e:
                logger.error(f"Could not fail {len(undelivered)} undelivered command(s) for agent {self.agent_id}: {e}")

        self._state = SessionState.CLOSED
        self._closed.set()

    async def _read_loop(self):
        while True:
            message = await self.websocket.receive()
            if message.get("type") == "websocket.disconnect":
                logger.info(f"Agent {self.agent_id} disconnected (code {message.get('code')})")
                return

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue

            self._handle_frame(raw)

    async def _write_loop(self):
        while True:
            envelope = await self._outbound.get()
            try:
                async with self._write_lock:
                    await self.websocket.send_text(encode_envelope(envelope))
            except Exception:
                self._undelivered.append(envelope.id)
                raise
            logger.debug(f"Sent command {envelope.id} to agent {self.agent_id}")

    def _handle_frame(self, raw):
        try:
            envelope = decode_envelope(raw)
        except EnvelopeDecodeError as e:
            logger.warning(f"Discarding malformed message from agent {self.agent_id}: {e}")
            return

        if isinstance(envelope, HeartbeatEnvelope):
            self._handle_heartbeat(envelope)
        elif isinstance(envelope, ResultEnvelope):
            self._handle_result(envelope)
        else:
            logger.warning(f"Agent {self.agent_id} sent a command envelope; ignoring")

    def _handle_heartbeat(self, heartbeat: HeartbeatEnvelope):
        if heartbeat.client_id != self.agent_id:
            logger.warning(
                f"Discarding heartbeat for {heartbeat.client_id} received on session of agent {self.agent_id}"
            )
            return

        self.last_heartbeat = self._clock()
        try:
            self.agent_manager.mark_seen(self.agent_id)
        except StorageError as e:
            logger.error(f"Could not record heartbeat for agent {self.agent_id}: {e}")

    def _handle_result(self, result: ResultEnvelope):
        try:
            self.dispatcher.on_result(
                result.command_id,
                result.status,
                result.result,
                result.error,
                agent_id=self.agent_id,
            )
        except StorageError as e:
            logger.error(f"Could not store result for command {result.command_id}: {e}")
