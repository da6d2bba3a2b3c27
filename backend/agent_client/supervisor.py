"""
Reconnection Supervisor (agent side)

Keeps exactly one connection to the server alive for the lifetime of the
agent process.

State machine:
    disconnected -> connecting -> connected
    connecting   -> disconnected   (attempt failed, retry after backoff)
    connected    -> disconnected   (read/write failure, retry after backoff)

While connected two tasks share the WebSocket:
- heartbeat sender: one heartbeat immediately, then every heartbeat_interval
- reader: decodes command envelopes and runs each one through the executor

Writes are serialized by a lock. A single supervisor task owns the retry loop
and every attempt goes through a connect lock, so at most one reconnect
attempt is ever in flight. stop() wakes the retry wait immediately.
"""
import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional, Set

import aiohttp

from agent_client.backoff import BackoffPolicy, ConstantBackoff
from protocol import (
    CommandEnvelope,
    EnvelopeDecodeError,
    HeartbeatEnvelope,
    ResultEnvelope,
    decode_envelope,
    encode_envelope,
)

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ReconnectionSupervisor:
    """Connect, serve, and reconnect forever until stopped"""

    def __init__(
        self,
        client,
        executor,
        backoff: Optional[BackoffPolicy] = None,
        heartbeat_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            client: Has a client_id attribute and an async open_connection()
                returning an aiohttp-style WebSocket (AgentClient)
            executor: Has async execute(command) -> (output, error) (ShellExecutor)
            backoff: Delay policy between attempts (default: constant 5 seconds)
            heartbeat_interval: Seconds between heartbeats
            clock: Wall clock for heartbeat timestamps
        """
        self.client = client
        self.executor = executor
        self.backoff = backoff or ConstantBackoff(5.0)
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._connection = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._command_tasks: Set[asyncio.Task] = set()
        self._unsent_results: deque = deque()
        self._failures = 0

        # Observability, also used by tests
        self.attempts_in_flight = 0
        self.max_attempts_in_flight = 0
        self.connect_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the supervisor loop. Calling start() twice does not start a second loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="reconnection-supervisor")
        logger.info("Reconnection supervisor started")

    async def stop(self):
        """Stop the loop, cancel any pending retry wait and running commands, close the connection"""
        self._stop_event.set()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for task in list(self._command_tasks):
            task.cancel()
        if self._command_tasks:
            await asyncio.gather(*self._command_tasks, return_exceptions=True)
        self._command_tasks.clear()

        await self._close_connection()
        self._state = ConnectionState.DISCONNECTED
        logger.info("Reconnection supervisor stopped")

    async def _run(self):
        while not self._stop_event.is_set():
            ws = await self._connect_once()
            if ws is not None:
                self._failures = 0
                self.backoff.reset()
                try:
                    await self._serve(ws)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Connection lost: {e}")
                finally:
                    await self._close_connection()
                    self._state = ConnectionState.DISCONNECTED

                if self._stop_event.is_set():
                    break

            self._failures += 1
            delay = self.backoff.next_delay(self._failures)
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._failures})")
            if await self._wait_or_stop(delay):
                break

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep for delay seconds. Returns True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _connect_once(self):
        async with self._connect_lock:
            self.attempts_in_flight += 1
            self.max_attempts_in_flight = max(self.max_attempts_in_flight, self.attempts_in_flight)
            self._state = ConnectionState.CONNECTING
            try:
                ws = await self.client.open_connection()
            except asyncio.CancelledError:
                self._state = ConnectionState.DISCONNECTED
                raise
            except Exception as e:
                logger.warning(f"Connection attempt failed: {e}")
                self._state = ConnectionState.DISCONNECTED
                return None
            finally:
                self.attempts_in_flight -= 1

            self._connection = ws
            self._state = ConnectionState.CONNECTED
            self.connect_count += 1
            logger.info(f"Connected as client {self.client.client_id}")
            return ws

    async def _close_connection(self):
        ws = self._connection
        self._connection = None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing connection: {e}")

    async def _serve(self, ws):
        """Run heartbeat sender and reader until either fails"""
        await self._flush_results(ws)

        heartbeat = asyncio.create_task(self._heartbeat_loop(ws), name="agent-heartbeat")
        reader = asyncio.create_task(self._read_loop(ws), name="agent-reader")
        tasks = [heartbeat, reader]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _send(self, ws, envelope):
        async with self._write_lock:
            await ws.send_str(encode_envelope(envelope))

    async def _heartbeat_loop(self, ws):
        while True:
            heartbeat = HeartbeatEnvelope(client_id=self.client.client_id, timestamp=int(self._clock()))
            await self._send(ws, heartbeat)
            logger.debug("Heartbeat sent")
            await asyncio.sleep(self.heartbeat_interval)

    async def _read_loop(self, ws):
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT or msg.type == aiohttp.WSMsgType.BINARY:
                self._handle_message(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(f"WebSocket error: {ws.exception()}")

        logger.warning("WebSocket connection closed by server")

    def _handle_message(self, raw):
        try:
            envelope = decode_envelope(raw)
        except EnvelopeDecodeError as e:
            logger.warning(f"Discarding malformed message from server: {e}")
            return

        if not isinstance(envelope, CommandEnvelope):
            logger.debug(f"Ignoring {type(envelope).__name__} from server")
            return

        task = asyncio.create_task(self._run_command(envelope), name=f"command-{envelope.id}")
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    async def _run_command(self, command: CommandEnvelope):
        logger.info(f"Executing command {command.id}")
        try:
            output, error = await self.executor.execute(command.command)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Executor failed for command {command.id}: {e}", exc_info=True)
            output, error = "", str(e)

        result = ResultEnvelope(
            command_id=command.id,
            status="error" if error else "success",
            result=output,
            error=error,
        )
        await self._report(result)

    async def _report(self, result: ResultEnvelope):
        """Send a result on the current connection, or hold it for the next one"""
        ws = self._connection
        if ws is None or ws.closed:
            logger.info(f"Not connected, holding result for command {result.command_id}")
            self._unsent_results.append(result)
            return

        try:
            await self._send(ws, result)
            logger.info(f"Reported result for command {result.command_id} ({result.status})")
        except Exception as e:
            logger.warning(f"Failed to send result for command {result.command_id}: {e}")
            self._unsent_results.append(result)

    async def _flush_results(self, ws):
        while self._unsent_results:
            result = self._unsent_results.popleft()
            try:
                await self._send(ws, result)
            except Exception:
                self._unsent_results.appendleft(result)
                raise
            logger.info(f"Reported held result for command {result.command_id}")
