"""
Command execution capability for the agent runtime.

execute(command) -> (output, error): output is the combined stdout/stderr,
error is None on success or a short description of the failure.
"""
import asyncio
import logging
import os
import signal
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


class ShellExecutor:
    """Runs commands with /bin/sh -c semantics"""

    def __init__(self, timeout: Optional[float] = None, encoding: str = "utf-8"):
        """
        Args:
            timeout: Seconds before the command is killed (None or 0 waits forever)
            encoding: Used to decode process output (undecodable bytes are replaced)
        """
        self.timeout = timeout or None
        self.encoding = encoding

    async def execute(self, command: str) -> Tuple[str, Optional[str]]:
        try:
            # Own process group so a timeout kills the whole pipeline, not just the shell
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to start command: {e}")
            return "", str(e)

        # Output is buffered by a separate reader so a timeout keeps what was printed
        output = bytearray()
        reader = asyncio.create_task(self._collect(process.stdout, output))
        try:
            await asyncio.wait_for(process.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()
            await reader
            logger.warning(f"Command timed out after {self.timeout}s")
            return self._decode(output), f"timed out after {self.timeout}s"
        except asyncio.CancelledError:
            self._kill(process)
            await process.wait()
            reader.cancel()
            raise

        await reader
        result = self._decode(output)
        if process.returncode != 0:
            return result, f"exit status {process.returncode}"
        return result, None

    @staticmethod
    async def _collect(stream: asyncio.StreamReader, buffer: bytearray):
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            buffer.extend(chunk)

    def _decode(self, data: Optional[bytes]) -> str:
        return (data or b"").decode(self.encoding, errors="replace")

    @staticmethod
    def _kill(process: asyncio.subprocess.Process):
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
