"""
Stream session for the Kana order_history feed.

Owns exactly one websocket at a time. On connect it resets the reconnect
counter, starts a keepalive ping and subscribes every known profile
address from "now" so the venue does not replay full history. On
disconnect it schedules a reconnect with linear backoff
(reconnect_delay * attempt) until max attempts, then parks in FAILED and
waits for a manual restart.

States:
    DISCONNECTED -> CONNECTING -> CONNECTED -> (DISCONNECTED | CLOSING) -> CLOSED
    DISCONNECTED -> FAILED once attempts are exhausted
"""

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .models import ConnectError, short_address

logger = logging.getLogger(__name__)

ORDER_HISTORY_TOPIC = "order_history"

DEFAULT_RECONNECT_DELAY = 5.0  # seconds, multiplied by attempt number
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_PING_INTERVAL = 20.0  # seconds
OPEN_TIMEOUT = 15.0  # seconds


class SessionState(Enum):
    """Stream session lifecycle."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


def _default_connector(url: str) -> Awaitable[Any]:
    # keepalive is driven by the session itself
    return websockets.connect(url, ping_interval=None, open_timeout=OPEN_TIMEOUT)


class StreamSession:
    """
    One persistent connection to the venue's event feed.

    Attributes:
        url: Websocket URL.
        state: Current SessionState.
        reconnect_attempts: Consecutive failed connections since the last success.
        last_reconnect_delay: Delay of the most recently scheduled reconnect.

    Example:
        session = StreamSession(url, on_message=engine.handle_message,
                                addresses=registry_profiles)
        await session.start()
        ...
        await session.close()
    """

    def __init__(
        self,
        url: str,
        on_message: Callable[[str], None],
        addresses: Callable[[], list[str]] = list,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        connector: Callable[[str], Awaitable[Any]] = _default_connector,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the session.

        Args:
            url: Websocket URL
            on_message: Called synchronously with every text frame
            addresses: Returns the profile addresses to subscribe on connect
            max_reconnect_attempts: Reconnects before entering FAILED
            reconnect_delay: Base delay for linear backoff (seconds)
            ping_interval: Seconds between keepalive pings
            connector: Opens a socket (tests inject a fake)
            clock: Source of unix time for from_timestamp
        """
        self.url = url
        self._on_message = on_message
        self._addresses = addresses
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.ping_interval = ping_interval
        self._connector = connector
        self._clock = clock

        self.state = SessionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_reconnect_delay: Optional[float] = None
        self.last_error: Optional[str] = None
        self.messages_received = 0

        self._ws: Any = None
        self._connect_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED and self._ws is not None

    async def start(self) -> None:
        """Connect, falling back to the reconnect schedule if the first attempt fails."""
        try:
            await self.connect()
        except ConnectError as e:
            logger.error(f"Initial connection failed: {e}")
            self._handle_disconnect(str(e))

    async def connect(self) -> None:
        """
        Open the socket, start keepalive and subscribe known addresses.

        Raises:
            ConnectError: If the socket cannot be opened.
        """
        async with self._connect_lock:
            if self.state in (SessionState.CLOSING, SessionState.CLOSED):
                raise ConnectError("session is closed")

            # never two sockets for one session
            await self._close_socket()

            self.state = SessionState.CONNECTING
            logger.info(f"Connecting to {self.url}...")

            try:
                ws = await self._connector(self.url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                if self.state is SessionState.CONNECTING:
                    self.state = SessionState.DISCONNECTED
                self.last_error = str(e) or type(e).__name__
                raise ConnectError(f"cannot connect to {self.url}: {self.last_error}") from e

            if self.state is not SessionState.CONNECTING:
                # close() ran while the socket was opening
                await ws.close()
                raise ConnectError("session closed while connecting")

            self._ws = ws
            self.state = SessionState.CONNECTED
            self.reconnect_attempts = 0
            self.last_error = None
            logger.info("WebSocket connected")

            self._keepalive_task = asyncio.create_task(self._keepalive(ws))

            for address in self._addresses():
                await self.subscribe(address)

            if self._ws is not ws:
                return
            self._reader_task = asyncio.create_task(self._read_loop(ws))

    async def subscribe(self, address: str, from_timestamp: Optional[int] = None) -> bool:
        """
        Subscribe to a profile's order history from a timestamp (default: now).

        Returns:
            False if the session is not connected or the send failed.
        """
        if not self.is_connected:
            logger.warning(f"Cannot subscribe {short_address(address)}: session is {self.state}")
            return False

        message = {
            "topic": ORDER_HISTORY_TOPIC,
            "address": address,
            "from_timestamp": int(self._clock() if from_timestamp is None else from_timestamp),
        }
        try:
            await self._ws.send(json.dumps(message))
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"Subscribe for {short_address(address)} failed: {e}")
            return False

        logger.info(f"Subscribed to {ORDER_HISTORY_TOPIC} for profile {short_address(address)}")
        return True

    async def _read_loop(self, ws: Any) -> None:
        reason = "closed by remote"
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                self.messages_received += 1
                try:
                    self._on_message(raw)
                except Exception as e:
                    logger.error(f"Message handler error: {e}", exc_info=True)
        except ConnectionClosed as e:
            reason = str(e)
        except (OSError, WebSocketException) as e:
            reason = str(e) or type(e).__name__

        if ws is self._ws:
            logger.warning(f"WebSocket disconnected: {reason}")
            self._handle_disconnect(reason)

    async def _keepalive(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await ws.ping()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Keepalive stopped: {e}")
                return
            logger.debug("Sent ping to keep connection alive")

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    def _handle_disconnect(self, reason: str) -> Optional[float]:
        """
        Schedule a reconnect or give up.

        Returns:
            The scheduled delay, or None if nothing was scheduled.
        """
        self._stop_keepalive()
        self._ws = None
        self.last_error = reason

        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return None

        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            return None

        if self.reconnect_attempts >= self.max_reconnect_attempts:
            self.state = SessionState.FAILED
            logger.error(
                f"Max reconnection attempts ({self.max_reconnect_attempts}) reached; "
                f"session FAILED, manual restart required"
            )
            return None

        self.state = SessionState.DISCONNECTED
        self.reconnect_attempts += 1
        delay = self.reconnect_delay * self.reconnect_attempts
        self.last_reconnect_delay = delay

        logger.info(
            f"Scheduling reconnection attempt {self.reconnect_attempts}/"
            f"{self.max_reconnect_attempts} in {delay:.0f} seconds..."
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        return delay

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.state is not SessionState.DISCONNECTED:
            return
        try:
            await self.connect()
        except ConnectError as e:
            logger.error(f"Reconnection failed: {e}")
            self._handle_disconnect(str(e))

    async def restart(self) -> None:
        """Manual restart after FAILED: reset the counter and connect again."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            logger.warning("Restart ignored: session is closed")
            return
        self.reconnect_attempts = 0
        self.state = SessionState.DISCONNECTED
        await self.start()

    async def _close_socket(self) -> None:
        self._stop_keepalive()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error closing socket: {e}")

    async def _cancel(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """Operator shutdown: cancel pending reconnects and close the socket."""
        logger.info("Closing stream session...")
        self.state = SessionState.CLOSING

        await self._cancel(self._reconnect_task)
        await self._close_socket()
        await self._cancel(self._reader_task)

        self.state = SessionState.CLOSED
        logger.info("Stream session closed")

    def get_status(self) -> dict[str, Any]:
        return {
            "state": str(self.state),
            "is_connected": self.is_connected,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "messages_received": self.messages_received,
            "last_error": self.last_error,
        }
