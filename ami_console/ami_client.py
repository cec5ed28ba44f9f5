"""
Asterisk Manager Interface (AMI) session.

Owns the single TCP connection to the switch: connect, banner drain, login,
the inbound message stream and the only write path. It never reads a
response on behalf of a command; correlation lives in ami_console.actions.
"""

import asyncio
import contextlib
from collections import deque
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Deque, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ami_console.errors import AuthenticationError, TransportError
from ami_console.logging_config import get_logger
from ami_console.protocol import AMIProtocolReader, Fields, encode_action

logger = get_logger(__name__)

Opener = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class AMISession:
    """A client session for the Asterisk Manager Interface."""

    def __init__(
        self,
        host: str,
        port: int = 5038,
        *,
        connect_timeout: float = 5.0,
        connect_attempts: int = 3,
        banner_drain_attempts: int = 5,
        banner_timeout: float = 0.2,
        logoff_timeout: float = 1.0,
        opener: Opener = asyncio.open_connection,
    ):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.connect_attempts = connect_attempts
        self.banner_drain_attempts = banner_drain_attempts
        self.banner_timeout = banner_timeout
        self.logoff_timeout = logoff_timeout
        self._opener = opener

        self.state = SessionState.DISCONNECTED
        self.failure_reason: Optional[str] = None
        self.banner: Optional[str] = None

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._protocol: Optional[AMIProtocolReader] = None
        # notifications read while waiting for the login response
        self._backlog: Deque[dict] = deque()
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, ami_config, **kwargs) -> "AMISession":
        return cls(
            ami_config.host,
            ami_config.port,
            connect_timeout=ami_config.connect_timeout,
            connect_attempts=ami_config.connect_attempts,
            banner_drain_attempts=ami_config.banner_drain_attempts,
            banner_timeout=ami_config.banner_timeout,
            logoff_timeout=ami_config.logoff_timeout,
            **kwargs,
        )

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._closed and self.state != SessionState.FAILED

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED and not self._closed

    def mark_failed(self, reason: str) -> None:
        self.state = SessionState.FAILED
        self.failure_reason = reason

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Open the TCP connection and drain the banner. Raises TransportError."""
        self.state = SessionState.CONNECTING
        logger.info("Connecting to AMI...", host=self.host, port=self.port)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.connect_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                retry=retry_if_exception_type((OSError, asyncio.TimeoutError)),
                reraise=True,
            ):
                with attempt:
                    self._reader, self._writer = await asyncio.wait_for(
                        self._opener(self.host, self.port), timeout=self.connect_timeout
                    )
        except (OSError, asyncio.TimeoutError) as e:
            reason = f"connect to {self.host}:{self.port} failed: {e or type(e).__name__}"
            self.mark_failed(reason)
            logger.error("Failed to connect to AMI", host=self.host, port=self.port, error=str(e) or type(e).__name__)
            raise TransportError(reason) from e

        self._protocol = AMIProtocolReader(self._reader)
        await self._drain_banner()
        logger.info("Connected to AMI", host=self.host, port=self.port, banner=self.banner)

    async def _drain_banner(self) -> None:
        # Best effort: absence of a banner is not an error.
        for _ in range(self.banner_drain_attempts):
            line = await self._protocol.read_line_with_timeout(self.banner_timeout)
            if line is None:
                return
            if line.strip():
                self.banner = line.strip()
                return

    async def authenticate(self, username: str, secret: str) -> None:
        """Log in. Raises AuthenticationError on anything but 'Response: Success'."""
        if self._protocol is None:
            raise AuthenticationError("not connected")
        self.state = SessionState.AUTHENTICATING
        try:
            await self.send([
                ("Action", "Login"),
                ("Username", username),
                ("Secret", secret),
                ("Events", "on"),
            ])
            while True:
                message = await self._protocol.read_message()
                if "Response" in message:
                    break
                self._backlog.append(message)
        except TransportError as e:
            self.mark_failed(f"connection lost during login: {e}")
            raise AuthenticationError(self.failure_reason) from e

        response = message.get("Response", "")
        if response.lower() != "success":
            reason = message.get("Message") or f"Response: {response or '<empty>'}"
            self.mark_failed(f"login rejected: {reason}")
            logger.error("AMI login failed", username=username, reason=reason)
            raise AuthenticationError(reason)

        self.state = SessionState.AUTHENTICATED
        logger.info("Authenticated to AMI", username=username)

    def events(self) -> AsyncIterator[dict]:
        """Every subsequent inbound message; responses and notifications alike.

        Notifications that arrived during login come first.
        """
        if self._protocol is None:
            raise TransportError("not connected")
        return self._iter_events(self._protocol)

    async def _iter_events(self, protocol: AMIProtocolReader) -> AsyncIterator[dict]:
        while self._backlog:
            yield self._backlog.popleft()
        async for message in protocol:
            yield message

    async def send(self, fields: Fields) -> None:
        """Write one command block. Never reads."""
        if self._writer is None or self._closed:
            raise TransportError("not connected")
        payload = encode_action(fields)
        async with self._write_lock:
            try:
                self._writer.write(payload)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                self.mark_failed(f"write failed: {e}")
                raise TransportError(f"AMI write failed: {e}") from e

    async def close(self) -> None:
        """Best-effort logoff, then release the transport. Idempotent."""
        if self._closed:
            return
        writer = self._writer
        if writer is not None and self.state == SessionState.AUTHENTICATED:
            try:
                await asyncio.wait_for(self.send([("Action", "Logoff")]), timeout=self.logoff_timeout)
            except (TransportError, asyncio.TimeoutError) as e:
                logger.debug("AMI logoff not delivered", error=str(e) or type(e).__name__)
        self._closed = True
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError, asyncio.TimeoutError):
                await asyncio.wait_for(writer.wait_closed(), timeout=self.logoff_timeout)
        if self.state != SessionState.FAILED:
            self.state = SessionState.DISCONNECTED
        logger.info("Disconnected from AMI.")
