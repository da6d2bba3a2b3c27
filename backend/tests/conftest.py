"""
Shared pytest fixtures for command server tests.

Fixtures provided:
- db: In-memory SQLite DatabaseManager
- registry: Empty SessionRegistry
- clock: Controllable monotonic clock shared by sessions and the heartbeat monitor
- agent_manager: AgentManager with a predictable credential issuer
- dispatcher: CommandDispatcher over db and registry
- registered_agent: Agent record "agent-1"
- fake_websocket: Starlette-style WebSocket double
- make_websocket: FakeWebSocket factory for custom handshakes
- make_session: Builds an authenticated, active AgentSession
- wait_until: Polls a condition while letting the event loop run
"""

import asyncio
import json
import os
import sys
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from agent.command_dispatcher import CommandDispatcher
from agent.manager import AgentManager
from agent.session import AgentSession
from agent.session_registry import SessionRegistry
from database import DatabaseManager


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def set(self, value: float):
        self.now = value


class FakeWebSocket:
    """
    Minimal stand-in for starlette.websockets.WebSocket.

    Inbound frames are queued with push_text()/push_bytes(); everything the
    server sends lands in .sent. close() unblocks a pending receive().
    """

    def __init__(self, client_id=None, authorization=None, host="10.0.0.5"):
        self.query_params = {"client_id": client_id} if client_id else {}
        self.headers = {"authorization": authorization} if authorization else {}
        self.client = SimpleNamespace(host=host, port=50000)
        self.sent = []
        self.accepted = False
        self.closed = False
        self.close_code = None
        self.close_reason = None
        self.fail_send = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def receive(self):
        return await self._inbox.get()

    async def send_text(self, data: str):
        if self.fail_send or self.closed:
            raise ConnectionResetError("connection reset by peer")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason=None):
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    def push_text(self, text: str):
        self._inbox.put_nowait({"type": "websocket.receive", "text": text})

    def push_json(self, payload: dict):
        self.push_text(json.dumps(payload))

    def push_bytes(self, data: bytes):
        self._inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnect(self, code: int = 1006):
        """Simulate the agent dropping the connection"""
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})


@pytest.fixture
def db():
    manager = DatabaseManager("sqlite://")
    yield manager
    manager.dispose()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def agent_manager(db):
    return AgentManager(db, credential_issuer=lambda agent_id: f"cred-{agent_id}")


@pytest.fixture
def dispatcher(db, registry):
    return CommandDispatcher(db, registry)


@pytest.fixture
def registered_agent(db):
    return db.add_agent("agent-1", hostname="host-1", ip="10.0.0.1", status="registered")


@pytest.fixture
def fake_websocket():
    return FakeWebSocket(client_id="agent-1", authorization="Bearer cred-agent-1")


@pytest.fixture
def make_websocket():
    """Factory for FakeWebSocket with arbitrary handshake values"""
    return FakeWebSocket


@pytest.fixture
def make_session(registry, dispatcher, agent_manager, clock):
    """Factory for sessions that passed authentication and were activated (not yet registered)"""

    def _make(agent_id="agent-1", websocket=None):
        websocket = websocket or FakeWebSocket(client_id=agent_id, authorization=f"Bearer cred-{agent_id}")
        session = AgentSession(
            agent_id,
            websocket,
            registry=registry,
            dispatcher=dispatcher,
            agent_manager=agent_manager,
            clock=clock,
        )
        assert session.authenticate(f"cred-{agent_id}", lambda cred: cred[len("cred-"):])
        session.activate()
        return session

    return _make


@pytest.fixture
def wait_until():
    """Await a condition, yielding to the event loop between checks"""

    async def _wait(condition, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait
