"""
Agent Command Dispatcher

Creates command records, hands them to live agent sessions and records results.

Architecture:
- submit() persists a pending command, then delivers it immediately if the
  agent has a live session (pending -> executing); otherwise it stays pending
- deliver_pending() flushes queued commands when an agent (re)connects
- on_result() applies a result only to a command that is still executing;
  duplicate, late or misattributed results are logged and discarded
- An expiry sweep fails commands that never got a result (or, optionally,
  never got delivered)

Status transitions are compare-and-set in the store, so they only move forward:
    pending -> executing -> completed | failed
    pending -> failed      (undelivered or expired)
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from agent.models import CommandStatus
from agent.session_registry import SessionRegistry
from database import Command, DatabaseManager, as_utc, utcnow
from protocol import CommandEnvelope

logger = logging.getLogger(__name__)

RESULT_STATUS_MAP = {
    "success": CommandStatus.COMPLETED,
    "error": CommandStatus.FAILED,
}


class AgentNotFoundError(Exception):
    """Raised when an operator references an agent that was never registered"""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} not found")
        self.agent_id = agent_id


class CommandDispatcher:
    """Routes operator commands to agent sessions and tracks their status"""

    def __init__(
        self,
        db: DatabaseManager,
        registry: SessionRegistry,
        command_timeout: float = 0,
        pending_timeout: float = 0,
    ):
        """
        Args:
            db: Store for command and agent records
            registry: Live session lookup
            command_timeout: Seconds an executing command may wait for a result (0 disables)
            pending_timeout: Seconds a pending command may wait for delivery (0 disables)
        """
        self.db = db
        self.registry = registry
        self.command_timeout = command_timeout
        self.pending_timeout = pending_timeout
        self._sweep_task: Optional[asyncio.Task] = None

    def submit(self, agent_id: str, command_text: str) -> Command:
        """
        Create a command and try to deliver it right away.

        Never waits for the agent to execute anything.

        Raises:
            AgentNotFoundError: Agent was never registered
            StorageError: Store unavailable

        Returns:
            The command record, status 'executing' if handed to a live session, else 'pending'
        """
        if self.db.get_agent(agent_id) is None:
            raise AgentNotFoundError(agent_id)

        command = self.db.add_command(str(uuid.uuid4()), agent_id, command_text)
        logger.info(f"Created command {command.id} for agent {agent_id}")

        session = self.registry.lookup(agent_id)
        if session is None or not session.is_active:
            logger.info(f"Agent {agent_id} is not connected, command {command.id} queued")
            return command

        delivered = self._deliver(session, command)
        return delivered or command

    def deliver_pending(self, agent_id: str) -> int:
        """
        Deliver queued commands to the agent's live session, oldest first.

        Returns:
            Number of commands handed to the session
        """
        session = self.registry.lookup(agent_id)
        if session is None or not session.is_active:
            return 0

        count = 0
        for command in self.db.get_commands_by_status(CommandStatus.PENDING.value, agent_id=agent_id):
            if self._deliver(session, command) is None:
                continue
            count += 1

        if count:
            logger.info(f"Delivered {count} queued command(s) to agent {agent_id}")
        return count

    def _deliver(self, session, command: Command) -> Optional[Command]:
        """
        Advance a pending command to executing and queue it on the session.

        The status write and the enqueue happen without yielding to the event
        loop, so the session can't close between them.
        """
        if not session.is_active:
            return None

        updated = self.db.transition_command(
            command.id,
            CommandStatus.PENDING.value,
            status=CommandStatus.EXECUTING.value,
            dispatched_at=utcnow(),
        )
        if updated is None:
            logger.debug(f"Command {command.id} is no longer pending, skipping delivery")
            return None

        session.send_command(CommandEnvelope(id=updated.id, command=updated.command))
        logger.info(f"Dispatched command {updated.id} to agent {session.agent_id}")
        return updated

    def on_result(
        self,
        command_id: str,
        status: str,
        result_text: Optional[str],
        error_text: Optional[str],
        agent_id: Optional[str] = None,
    ) -> Optional[Command]:
        """
        Record a result reported by an agent.

        Args:
            command_id: ID echoed back by the agent
            status: 'success' or 'error'
            result_text: Command output
            error_text: Error description, if any
            agent_id: Agent whose session delivered the result; results for
                another agent's command are discarded

        Returns:
            The updated command, or None if the result was discarded
        """
        new_status = RESULT_STATUS_MAP.get(status)
        if new_status is None:
            logger.warning(f"Discarding result for command {command_id} with unknown status {status!r}")
            return None

        command = self.db.get_command(command_id)
        if command is None:
            logger.warning(f"Discarding result for unknown command {command_id}")
            return None

        if agent_id is not None and command.agent_id != agent_id:
            logger.warning(
                f"Discarding result for command {command_id} from agent {agent_id}; "
                f"command belongs to agent {command.agent_id}"
            )
            return None

        if command.status != CommandStatus.EXECUTING.value:
            logger.warning(
                f"Discarding result for command {command_id} in state {command.status} (duplicate or late)"
            )
            return None

        updated = self.db.transition_command(
            command_id,
            CommandStatus.EXECUTING.value,
            status=new_status.value,
            result=result_text,
            error=error_text or None,
            completed_at=utcnow(),
        )
        if updated is None:
            logger.warning(f"Discarding result for command {command_id}; it was resolved concurrently")
            return None

        logger.info(f"Command {command_id} {new_status.value}")
        return updated

    def fail_undelivered(self, command_ids: Iterable[str]) -> int:
        """Fail executing commands whose session closed before writing them"""
        count = 0
        for command_id in command_ids:
            updated = self.db.transition_command(
                command_id,
                CommandStatus.EXECUTING.value,
                status=CommandStatus.FAILED.value,
                error="agent disconnected before delivery",
                completed_at=utcnow(),
            )
            if updated is not None:
                count += 1
                logger.warning(f"Command {command_id} failed: agent disconnected before delivery")
        return count

    def history(self, agent_id: str) -> List[Command]:
        """
        Command history for an agent, oldest first. Read-only.

        Raises:
            AgentNotFoundError: Agent was never registered
        """
        if self.db.get_agent(agent_id) is None:
            raise AgentNotFoundError(agent_id)
        return self.db.get_commands_for_agent(agent_id)

    def expire_stale_commands(self, now: Optional[datetime] = None) -> List[str]:
        """
        Fail commands that exceeded their timeout.

        - executing longer than command_timeout -> failed, "timed out waiting for result"
        - pending longer than pending_timeout   -> failed, "agent never became reachable"

        Returns:
            IDs of the commands that were failed
        """
        now = now or utcnow()
        expired: List[str] = []

        if self.command_timeout > 0:
            cutoff = now - timedelta(seconds=self.command_timeout)
            for command in self.db.get_commands_by_status(CommandStatus.EXECUTING.value):
                started = as_utc(command.dispatched_at) or as_utc(command.created_at)
                if started is not None and started <= cutoff:
                    if self._expire(command, CommandStatus.EXECUTING, "timed out waiting for result", now):
                        expired.append(command.id)

        if self.pending_timeout > 0:
            cutoff = now - timedelta(seconds=self.pending_timeout)
            for command in self.db.get_commands_by_status(CommandStatus.PENDING.value):
                created = as_utc(command.created_at)
                if created is not None and created <= cutoff:
                    if self._expire(command, CommandStatus.PENDING, "agent never became reachable", now):
                        expired.append(command.id)

        if expired:
            logger.warning(f"Expired {len(expired)} command(s): {expired}")
        return expired

    def _expire(self, command: Command, from_status: CommandStatus, error: str, now: datetime) -> bool:
        updated = self.db.transition_command(
            command.id,
            from_status.value,
            status=CommandStatus.FAILED.value,
            error=error,
            completed_at=now,
        )
        return updated is not None

    async def start_expiry_sweep(self, interval: float):
        """Run expire_stale_commands() every interval seconds in the background"""
        if self._sweep_task and not self._sweep_task.done():
            return
        if self.command_timeout <= 0 and self.pending_timeout <= 0:
            logger.info("Command expiry disabled")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval), name="command-expiry-sweep")
        logger.info(f"Command expiry sweep started (interval {interval}s)")

    async def stop_expiry_sweep(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                logger.info("Command expiry sweep cancelled successfully")
            self._sweep_task = None

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                self.expire_stale_commands()
            except Exception as e:
                logger.error(f"Command expiry sweep failed: {e}", exc_info=True)
