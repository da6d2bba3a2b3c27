"""
Unit tests for the SessionRegistry.

Tests atomic replace on register, compare-and-delete on remove, and that an
agent never has more than one registered session.
"""

import asyncio

import pytest

from agent.session_registry import SessionRegistry


class StubSession:
    """Session double whose close path deregisters itself like AgentSession does"""

    def __init__(self, registry, agent_id="agent-1"):
        self.registry = registry
        self.agent_id = agent_id
        self.closed = False
        self.close_reason = None
        self.removed = None

    async def close(self, reason="Session closed", code=1000):
        self.closed = True
        self.close_reason = reason
        self.removed = await self.registry.remove(self.agent_id, self)


class TestRegisterAndLookup:
    """Test installing and finding sessions"""

    @pytest.mark.asyncio
    async def test_register_then_lookup(self):
        registry = SessionRegistry()
        session = StubSession(registry)

        previous = await registry.register("agent-1", session)

        assert previous is None
        assert registry.lookup("agent-1") is session
        assert registry.is_connected("agent-1")
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_lookup_unknown_agent(self):
        registry = SessionRegistry()

        assert registry.lookup("missing") is None
        assert not registry.is_connected("missing")

    @pytest.mark.asyncio
    async def test_register_replaces_and_closes_previous(self):
        registry = SessionRegistry()
        old = StubSession(registry)
        new = StubSession(registry)

        await registry.register("agent-1", old)
        previous = await registry.register("agent-1", new)

        assert previous is old
        assert old.closed
        assert old.close_reason == "Replaced by new connection"
        # Old session's close handler must not evict the new session
        assert old.removed is False
        assert registry.lookup("agent-1") is new
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_register_same_session_twice_does_not_close_it(self):
        registry = SessionRegistry()
        session = StubSession(registry)

        await registry.register("agent-1", session)
        previous = await registry.register("agent-1", session)

        assert previous is None
        assert not session.closed
        assert registry.lookup("agent-1") is session

    @pytest.mark.asyncio
    async def test_sessions_for_different_agents_coexist(self):
        registry = SessionRegistry()
        a = StubSession(registry, "agent-a")
        b = StubSession(registry, "agent-b")

        await registry.register("agent-a", a)
        await registry.register("agent-b", b)

        assert sorted(registry.get_connected_agent_ids()) == ["agent-a", "agent-b"]
        assert set(registry.sessions()) == {a, b}


class TestCompareAndDelete:
    """Test remove() only deletes the entry it was asked about"""

    @pytest.mark.asyncio
    async def test_remove_current_session(self):
        registry = SessionRegistry()
        session = StubSession(registry)
        await registry.register("agent-1", session)

        assert await registry.remove("agent-1", session) is True
        assert registry.lookup("agent-1") is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_stale_remove_is_noop(self):
        registry = SessionRegistry()
        old = StubSession(registry)
        new = StubSession(registry)
        await registry.register("agent-1", old)
        await registry.register("agent-1", new)

        assert await registry.remove("agent-1", old) is False
        assert registry.lookup("agent-1") is new

    @pytest.mark.asyncio
    async def test_remove_unknown_agent(self):
        registry = SessionRegistry()

        assert await registry.remove("agent-1", StubSession(registry)) is False


class TestConcurrentReconnects:
    """At most one entry per agent under rapid connect/disconnect"""

    @pytest.mark.asyncio
    async def test_concurrent_registers_leave_one_entry(self):
        registry = SessionRegistry()
        sessions = [StubSession(registry) for _ in range(20)]

        await asyncio.gather(*(registry.register("agent-1", s) for s in sessions))

        assert len(registry) == 1
        current = registry.lookup("agent-1")
        assert current in sessions
        assert not current.closed
        assert all(s.closed for s in sessions if s is not current)

    @pytest.mark.asyncio
    async def test_interleaved_register_and_remove(self):
        registry = SessionRegistry()
        max_seen = 0

        async def connect_and_drop(session):
            nonlocal max_seen
            await registry.register("agent-1", session)
            max_seen = max(max_seen, len(registry))
            await asyncio.sleep(0)
            await registry.remove("agent-1", session)
            max_seen = max(max_seen, len(registry))

        await asyncio.gather(*(connect_and_drop(StubSession(registry)) for _ in range(50)))

        assert max_seen <= 1
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = SessionRegistry()
        sessions = [StubSession(registry, f"agent-{i}") for i in range(3)]
        for s in sessions:
            await registry.register(s.agent_id, s)

        await registry.close_all()

        assert len(registry) == 0
        assert all(s.closed for s in sessions)
        assert all(s.close_reason == "Server shutting down" for s in sessions)
