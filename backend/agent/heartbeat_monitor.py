"""
Agent Heartbeat Monitor

Agents send a heartbeat every 30 seconds. A session that has been silent for
longer than the timeout (default 90 seconds, tolerating two missed beats) is
closed through the same path as a transport error, which removes it from the
registry and marks the agent disconnected. The monitor never probes agents.
"""
import asyncio
import logging
import time
from typing import Callable, List, Optional

from agent.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    """Periodically evicts sessions whose heartbeats stopped"""

    def __init__(
        self,
        registry: SessionRegistry,
        timeout: float = 90.0,
        check_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            registry: Sessions to watch
            timeout: Seconds of silence before a session is closed
            check_interval: Seconds between sweeps
            clock: Must be the same clock the sessions use
        """
        self.registry = registry
        self.timeout = timeout
        self.check_interval = check_interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """
        Close every active session that exceeded the timeout.

        Returns:
            Agent IDs whose sessions were closed
        """
        if now is None:
            now = self._clock()

        evicted = []
        for session in self.registry.sessions():
            if not session.is_active:
                continue
            silence = session.seconds_since_heartbeat(now)
            if silence > self.timeout:
                logger.warning(
                    f"Agent {session.agent_id} missed heartbeats for {silence:.0f}s "
                    f"(timeout {self.timeout:.0f}s), closing session"
                )
                await session.close(reason="Heartbeat timeout", code=1001)
                evicted.append(session.agent_id)
        return evicted

    async def start(self):
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="heartbeat-monitor")
        logger.info(f"Heartbeat monitor started (timeout {self.timeout}s, interval {self.check_interval}s)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.info("Heartbeat monitor cancelled successfully")
            self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Heartbeat sweep failed: {e}", exc_info=True)
