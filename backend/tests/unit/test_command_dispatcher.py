"""
Unit tests for the CommandDispatcher.

Tests submission with and without a live session, redelivery on connect,
result handling (including duplicate and misattributed results), and the
expiry sweep.
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from agent.command_dispatcher import AgentNotFoundError, CommandDispatcher
from database import StorageError, utcnow
from protocol import CommandEnvelope


class StubSession:
    """Live session double that records queued commands"""

    def __init__(self, agent_id="agent-1", active=True):
        self.agent_id = agent_id
        self.is_active = active
        self.queued = []

    def send_command(self, envelope: CommandEnvelope) -> bool:
        if not self.is_active:
            return False
        self.queued.append(envelope)
        return True


async def connect_stub(registry, agent_id="agent-1"):
    """Register a live StubSession for the agent"""
    session = StubSession(agent_id)
    await registry.register(agent_id, session)
    return session


class TestSubmit:
    """Test command submission"""

    def test_submit_unknown_agent_raises(self, dispatcher):
        with pytest.raises(AgentNotFoundError) as exc_info:
            dispatcher.submit("ghost", "echo hi")

        assert exc_info.value.agent_id == "ghost"

    def test_submit_without_session_stays_pending(self, db, dispatcher, registered_agent):
        command = dispatcher.submit("agent-1", "echo hi")

        assert command.status == "pending"
        assert command.dispatched_at is None
        assert db.get_command(command.id).status == "pending"

    @pytest.mark.asyncio
    async def test_submit_with_live_session_executes(self, db, registry, dispatcher, registered_agent):
        live_session = await connect_stub(registry)
        command = dispatcher.submit("agent-1", "echo hi")

        assert command.status == "executing"
        assert command.dispatched_at is not None
        assert live_session.queued == [CommandEnvelope(id=command.id, command="echo hi")]
        assert db.get_command(command.id).status == "executing"

    @pytest.mark.asyncio
    async def test_submit_with_inactive_session_stays_pending(self, registry, dispatcher, registered_agent):
        session = StubSession(active=False)
        await registry.register("agent-1", session)

        command = dispatcher.submit("agent-1", "echo hi")

        assert command.status == "pending"
        assert session.queued == []

    def test_submit_generates_unique_ids(self, dispatcher, registered_agent):
        ids = {dispatcher.submit("agent-1", f"echo {i}").id for i in range(10)}

        assert len(ids) == 10

    def test_storage_failure_surfaces(self, db, dispatcher, registered_agent):
        with patch.object(db, 'add_command', side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                dispatcher.submit("agent-1", "echo hi")


class TestDeliverPending:
    """Test redelivery of queued commands when an agent connects"""

    @pytest.mark.asyncio
    async def test_delivers_pending_oldest_first(self, db, registry, dispatcher, registered_agent):
        first = dispatcher.submit("agent-1", "echo 1")
        second = dispatcher.submit("agent-1", "echo 2")
        session = StubSession()
        await registry.register("agent-1", session)

        delivered = dispatcher.deliver_pending("agent-1")

        assert delivered == 2
        assert [e.id for e in session.queued] == [first.id, second.id]
        assert db.get_command(first.id).status == "executing"
        assert db.get_command(second.id).status == "executing"

    def test_no_session_delivers_nothing(self, dispatcher, registered_agent):
        dispatcher.submit("agent-1", "echo 1")

        assert dispatcher.deliver_pending("agent-1") == 0

    @pytest.mark.asyncio
    async def test_only_pending_commands_redelivered(self, db, registry, dispatcher, registered_agent):
        live_session = await connect_stub(registry)
        executing = dispatcher.submit("agent-1", "echo running")
        live_session.queued.clear()

        assert dispatcher.deliver_pending("agent-1") == 0
        assert live_session.queued == []
        assert db.get_command(executing.id).status == "executing"


class TestOnResult:
    """Test result handling"""

    @pytest.mark.asyncio
    async def test_success_result_completes(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        command = dispatcher.submit("agent-1", "echo hi")

        updated = dispatcher.on_result(command.id, "success", "hi\n", None, agent_id="agent-1")

        assert updated.status == "completed"
        stored = db.get_command(command.id)
        assert stored.status == "completed"
        assert stored.result == "hi\n"
        assert stored.error is None
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_error_result_fails(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        command = dispatcher.submit("agent-1", "false")

        dispatcher.on_result(command.id, "error", "", "exit status 1", agent_id="agent-1")

        stored = db.get_command(command.id)
        assert stored.status == "failed"
        assert stored.error == "exit status 1"

    @pytest.mark.asyncio
    async def test_duplicate_result_is_noop(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        command = dispatcher.submit("agent-1", "echo hi")
        dispatcher.on_result(command.id, "success", "hi\n", None)

        assert dispatcher.on_result(command.id, "error", "", "late failure") is None

        stored = db.get_command(command.id)
        assert stored.status == "completed"
        assert stored.result == "hi\n"
        assert stored.error is None

    def test_result_for_pending_command_discarded(self, db, dispatcher, registered_agent):
        """A pending command can't skip executing"""
        command = dispatcher.submit("agent-1", "echo hi")

        assert dispatcher.on_result(command.id, "success", "hi\n", None) is None
        assert db.get_command(command.id).status == "pending"

    def test_result_for_unknown_command_discarded(self, dispatcher, registered_agent):
        assert dispatcher.on_result("nope", "success", "", None) is None

    @pytest.mark.asyncio
    async def test_result_from_other_agent_discarded(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        db.add_agent("agent-2", hostname="host-2", ip=None)
        command = dispatcher.submit("agent-1", "echo hi")

        assert dispatcher.on_result(command.id, "success", "spoofed", None, agent_id="agent-2") is None
        assert db.get_command(command.id).status == "executing"

    @pytest.mark.asyncio
    async def test_unknown_status_discarded(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        command = dispatcher.submit("agent-1", "echo hi")

        assert dispatcher.on_result(command.id, "done", "hi", None) is None
        assert db.get_command(command.id).status == "executing"

    @pytest.mark.asyncio
    async def test_out_of_order_results_attributed_by_id(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        first = dispatcher.submit("agent-1", "sleep 1; echo first")
        second = dispatcher.submit("agent-1", "echo second")

        dispatcher.on_result(second.id, "success", "second\n", None)
        dispatcher.on_result(first.id, "success", "first\n", None)

        assert db.get_command(first.id).result == "first\n"
        assert db.get_command(second.id).result == "second\n"


class TestFailUndelivered:
    """Commands stranded in a closing session's queue"""

    @pytest.mark.asyncio
    async def test_fails_executing_commands(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        command = dispatcher.submit("agent-1", "echo hi")

        assert dispatcher.fail_undelivered([command.id]) == 1

        stored = db.get_command(command.id)
        assert stored.status == "failed"
        assert stored.error == "agent disconnected before delivery"

    @pytest.mark.asyncio
    async def test_leaves_finished_commands_alone(self, db, registry, dispatcher, registered_agent):
        await connect_stub(registry)
        command = dispatcher.submit("agent-1", "echo hi")
        dispatcher.on_result(command.id, "success", "hi\n", None)

        assert dispatcher.fail_undelivered([command.id]) == 0
        assert db.get_command(command.id).status == "completed"


class TestHistory:
    """Test the read-only history projection"""

    def test_history_oldest_first(self, dispatcher, registered_agent):
        ids = [dispatcher.submit("agent-1", f"echo {i}").id for i in range(3)]

        assert [c.id for c in dispatcher.history("agent-1")] == ids

    def test_history_only_for_that_agent(self, db, dispatcher, registered_agent):
        db.add_agent("agent-2", hostname="host-2", ip=None)
        dispatcher.submit("agent-2", "echo other")

        assert dispatcher.history("agent-1") == []

    def test_history_unknown_agent_raises(self, dispatcher):
        with pytest.raises(AgentNotFoundError):
            dispatcher.history("ghost")


class TestExpirySweep:
    """Test timeout-to-failed sweep"""

    @pytest.mark.asyncio
    async def test_executing_command_times_out(self, db, registry, registered_agent):
        await connect_stub(registry)
        dispatcher = CommandDispatcher(db, registry, command_timeout=60)
        command = dispatcher.submit("agent-1", "sleep 1000")

        expired = dispatcher.expire_stale_commands(now=utcnow() + timedelta(seconds=120))

        assert expired == [command.id]
        stored = db.get_command(command.id)
        assert stored.status == "failed"
        assert stored.error == "timed out waiting for result"

    @pytest.mark.asyncio
    async def test_recent_executing_command_kept(self, db, registry, registered_agent):
        await connect_stub(registry)
        dispatcher = CommandDispatcher(db, registry, command_timeout=60)
        command = dispatcher.submit("agent-1", "echo hi")

        assert dispatcher.expire_stale_commands(now=utcnow() + timedelta(seconds=10)) == []
        assert db.get_command(command.id).status == "executing"

    def test_pending_command_expires_when_enabled(self, db, registry, registered_agent):
        dispatcher = CommandDispatcher(db, registry, pending_timeout=300)
        command = dispatcher.submit("agent-1", "echo hi")

        expired = dispatcher.expire_stale_commands(now=utcnow() + timedelta(seconds=600))

        assert expired == [command.id]
        assert db.get_command(command.id).error == "agent never became reachable"

    def test_disabled_timeouts_expire_nothing(self, db, registry, registered_agent):
        dispatcher = CommandDispatcher(db, registry)
        dispatcher.submit("agent-1", "echo hi")

        assert dispatcher.expire_stale_commands(now=utcnow() + timedelta(days=365)) == []

    @pytest.mark.asyncio
    async def test_late_result_after_expiry_discarded(self, db, registry, registered_agent):
        await connect_stub(registry)
        dispatcher = CommandDispatcher(db, registry, command_timeout=60)
        command = dispatcher.submit("agent-1", "sleep 1000")
        dispatcher.expire_stale_commands(now=utcnow() + timedelta(seconds=120))

        assert dispatcher.on_result(command.id, "success", "done", None) is None
        assert db.get_command(command.id).status == "failed"

    @pytest.mark.asyncio
    async def test_sweep_not_started_when_disabled(self, db, registry):
        dispatcher = CommandDispatcher(db, registry)

        await dispatcher.start_expiry_sweep(0.01)

        assert dispatcher._sweep_task is None

    @pytest.mark.asyncio
    async def test_sweep_loop_runs_until_stopped(self, db, registry):
        dispatcher = CommandDispatcher(db, registry, command_timeout=60)
        dispatcher.expire_stale_commands = MagicMock(return_value=[])

        await dispatcher.start_expiry_sweep(0.01)
        await asyncio.sleep(0.05)
        await dispatcher.stop_expiry_sweep()

        assert dispatcher.expire_stale_commands.call_count >= 1
        assert dispatcher._sweep_task is None

    @pytest.mark.asyncio
    async def test_sweep_survives_errors(self, db, registry):
        dispatcher = CommandDispatcher(db, registry, command_timeout=60)
        dispatcher.expire_stale_commands = MagicMock(side_effect=StorageError("locked"))

        await dispatcher.start_expiry_sweep(0.01)
        await asyncio.sleep(0.05)

        assert not dispatcher._sweep_task.done()
        assert dispatcher.expire_stale_commands.call_count >= 2
        await dispatcher.stop_expiry_sweep()
