"""
HTTP/WebSocket client for the command server (agent side)

Registers with a single-use registration token, persists the returned
client_id and credential to a JSON state file, and opens the agent WebSocket
at /ws?client_id=<id> with "Authorization: Bearer <credential>".
"""
import asyncio
import json
import logging
import os
import socket
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class RegistrationError(Exception):
    """Raised when the server rejects registration or no token is available"""


class AgentClient:
    """Connection factory used by the ReconnectionSupervisor"""

    def __init__(
        self,
        server_url: str,
        registration_token: Optional[str] = None,
        state_file: Optional[str] = None,
        hostname: Optional[str] = None,
        ip: Optional[str] = None,
        request_timeout: float = 10.0,
    ):
        """
        Args:
            server_url: Base URL of the server, e.g. http://localhost:8080
            registration_token: Used only when no saved credential exists
            state_file: JSON file holding client_id and credential across restarts
            hostname: Reported hostname (defaults to this machine's)
            ip: Reported IP (server falls back to the connection address)
            request_timeout: Timeout for HTTP requests and the WebSocket handshake
        """
        self.base_url = server_url.rstrip("/")
        self.registration_token = registration_token
        self.state_file = state_file
        self.hostname = hostname or socket.gethostname()
        self.ip = ip
        self.request_timeout = request_timeout

        self.client_id: Optional[str] = None
        self.credential: Optional[str] = None

        self.session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()  # Prevent concurrent session creation

        self.load_state()

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            return "wss://" + self.base_url[len("https://"):] + "/ws"
        if self.base_url.startswith("http://"):
            return "ws://" + self.base_url[len("http://"):] + "/ws"
        return self.base_url + "/ws"

    @property
    def is_registered(self) -> bool:
        return bool(self.client_id and self.credential)

    def load_state(self) -> bool:
        """Load a saved client_id/credential. Returns True if one was found."""
        if not self.state_file or not os.path.exists(self.state_file):
            return False

        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
            return False

        client_id = state.get("client_id")
        credential = state.get("token")
        if not client_id or not credential:
            logger.warning(f"State file {self.state_file} is missing client_id or token, ignoring")
            return False

        self.client_id = client_id
        self.credential = credential
        logger.info(f"Loaded saved registration for client {client_id}")
        return True

    def save_state(self):
        if not self.state_file:
            return

        directory = os.path.dirname(self.state_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

        # Credential is a secret: owner read/write only
        old_umask = os.umask(0o077)
        try:
            with open(self.state_file, 'w') as f:
                json.dump({"client_id": self.client_id, "token": self.credential}, f)
        finally:
            os.umask(old_umask)
        logger.info(f"Saved registration to {self.state_file}")

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session"""
        # Fast path: check without lock
        if self.session is not None and not self.session.closed:
            return self.session

        async with self._session_lock:
            # Double-check after acquiring lock
            if self.session is not None and not self.session.closed:
                return self.session

            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
            return self.session

    async def register(self) -> str:
        """
        Exchange the registration token for a client_id and credential.

        Raises:
            RegistrationError: No token configured, or the server rejected it
            aiohttp.ClientError: Server unreachable

        Returns:
            The new client_id
        """
        if not self.registration_token:
            raise RegistrationError("No saved registration and no registration token configured")

        session = await self._get_session()
        payload = {"token": self.registration_token, "hostname": self.hostname}
        if self.ip:
            payload["ip"] = self.ip

        async with session.post(f"{self.base_url}/register", json=payload) as resp:
            if resp.status in (401, 422):
                error_text = await resp.text()
                raise RegistrationError(f"Registration rejected: HTTP {resp.status} - {error_text}")
            resp.raise_for_status()
            data = await resp.json()

        self.client_id = data["client_id"]
        self.credential = data["token"]
        self.save_state()

        logger.info(f"Registered with server as client {self.client_id}")
        return self.client_id

    async def open_connection(self) -> aiohttp.ClientWebSocketResponse:
        """
        Authenticate (registering first if needed) and open the agent WebSocket.

        Raises:
            RegistrationError, aiohttp.ClientError, asyncio.TimeoutError
        """
        if not self.is_registered:
            await self.register()

        session = await self._get_session()
        ws = await session.ws_connect(
            self.ws_url,
            params={"client_id": self.client_id},
            headers={"Authorization": f"Bearer {self.credential}"},
        )
        logger.info(f"Connected to {self.ws_url} as client {self.client_id}")
        return ws

    async def close(self):
        """Close the HTTP session"""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
