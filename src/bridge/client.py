"""Asynchronous request/response client for the native peer.

Requests carry a monotonically increasing id and wait on a future stored in
a pending map until the reader task delivers the matching response, the
per-request timeout fires, or the connection drops (which fails every pending
request at once). Push events are fanned out to registered listeners. When
the connection is lost a background loop retries at a fixed interval until
the peer is back.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from .protocol import Event, ProtocolError, Request, Response, encode_frame, read_message

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/thestuu-native.sock"
DEFAULT_REQUEST_TIMEOUT = 2.0
DEFAULT_RECONNECT_INTERVAL = 3.0

EventListener = Callable[[str, Dict[str, Any]], None]
LifecycleListener = Callable[[], None]


class BridgeError(Exception):
    """Base error for peer communication failures."""


class BridgeNotConnectedError(BridgeError):
    """Raised when a request is issued while no connection is open."""


class BridgeTimeoutError(BridgeError):
    """Raised when the peer does not answer within the request timeout."""


class BridgeDisconnectedError(BridgeError):
    """Raised for requests still pending when the connection drops."""


class BridgeRequestError(BridgeError):
    """Raised when the peer answers a request with ``ok: false``."""

    def __init__(self, command: str, message: str) -> None:
        super().__init__(message)
        self.command = command
        self.message = message


class PeerLink(Protocol):
    """What the reconciler and session need from a peer connection."""

    @property
    def connected(self) -> bool:
        """Whether requests can currently be issued."""

    async def request(
        self, command: str, payload: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Issue ``command`` and return the response payload."""


class BridgeClient:
    """Unix-socket client speaking length-prefixed msgpack frames."""

    def __init__(
        self,
        socket_path: Path | str = DEFAULT_SOCKET_PATH,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        auto_reconnect: bool = True,
    ) -> None:
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if reconnect_interval <= 0:
            raise ValueError("reconnect_interval must be positive")
        self.socket_path = str(socket_path)
        self.request_timeout = request_timeout
        self.reconnect_interval = reconnect_interval
        self.auto_reconnect = auto_reconnect
        self._ids = itertools.count(1)
        self._pending: Dict[int, Tuple[str, asyncio.Future]] = {}
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._event_listeners: List[EventListener] = []
        self._connect_listeners: List[LifecycleListener] = []
        self._disconnect_listeners: List[LifecycleListener] = []

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_event_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def add_connect_listener(self, listener: LifecycleListener) -> None:
        self._connect_listeners.append(listener)

    def add_disconnect_listener(self, listener: LifecycleListener) -> None:
        self._disconnect_listeners.append(listener)

    async def connect(self) -> bool:
        """Open the socket; return ``False`` (without raising) when the peer is absent."""

        if self.connected:
            return True
        self._closing = False
        try:
            reader, writer = await asyncio.open_unix_connection(self.socket_path)
        except OSError as exc:
            logger.debug("Native peer unavailable at %s: %s", self.socket_path, exc)
            return False
        self._reader, self._writer = reader, writer
        self._reader_task = asyncio.create_task(self._read_loop(reader))
        logger.info("Connected to native peer at %s", self.socket_path)
        self._notify(self._connect_listeners)
        return True

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""

        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
            self._reconnect_task = None
        writer = self._writer
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as exc:
                logger.debug("Error while closing native peer socket: %s", exc)
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        self._connection_lost()

    async def request(
        self,
        command: str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send ``command`` and wait for its response payload."""

        writer = self._writer
        if writer is None or writer.is_closing():
            raise BridgeNotConnectedError(f"Cannot send {command!r}: native peer not connected")
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (command, future)
        message = Request(id=request_id, cmd=command, payload=dict(payload or {}))
        try:
            writer.write(encode_frame(message.to_message()))
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            self._pending.pop(request_id, None)
            raise BridgeDisconnectedError(f"Failed to send {command!r}: {exc}") from exc
        logger.debug("-> %s #%d", command, request_id)
        limit = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, limit)
        except asyncio.TimeoutError as exc:
            raise BridgeTimeoutError(
                f"Native peer did not answer {command!r} within {limit:.2f}s"
            ) from exc
        finally:
            self._pending.pop(request_id, None)

    def start_reconnecting(self) -> None:
        """Begin the background reconnect loop unless it is already running."""

        if self._closing or self.connected or self.reconnecting:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    # ------------------------------------------------------------------
    # Internal helpers
    async def _reconnect_loop(self) -> None:
        while not self._closing and not self.connected:
            await asyncio.sleep(self.reconnect_interval)
            if self._closing:
                return
            if await self.connect():
                return

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                message = await read_message(reader)
                if isinstance(message, Response):
                    self._resolve(message)
                elif isinstance(message, Event):
                    self._dispatch_event(message)
                else:
                    logger.debug("Ignoring unexpected peer message %r", message)
        except (asyncio.IncompleteReadError, ConnectionError, OSError) as exc:
            logger.debug("Native peer stream ended: %s", exc)
        except ProtocolError as exc:
            logger.warning("Dropping native peer connection after protocol error: %s", exc)
        finally:
            if self._writer is not None and not self._writer.is_closing():
                self._writer.close()
            self._connection_lost()

    def _resolve(self, response: Response) -> None:
        entry = self._pending.get(response.id)
        if entry is None:
            logger.debug("Response for unknown request #%d ignored", response.id)
            return
        command, future = entry
        if future.done():
            return
        if response.ok:
            future.set_result(response.payload)
        else:
            future.set_exception(
                BridgeRequestError(command, response.error or f"{command} failed")
            )

    def _dispatch_event(self, event: Event) -> None:
        for listener in list(self._event_listeners):
            try:
                listener(event.name, event.payload)
            except Exception:
                logger.exception("Event listener failed for %s", event.name)

    def _connection_lost(self) -> None:
        was_connected = self._writer is not None
        self._reader = None
        self._writer = None
        pending, self._pending = self._pending, {}
        for command, future in pending.values():
            if not future.done():
                future.set_exception(BridgeDisconnectedError("native transport disconnected"))
        if not was_connected:
            return
        logger.warning(
            "Native peer disconnected; %d pending request(s) failed", len(pending)
        )
        self._notify(self._disconnect_listeners)
        if self.auto_reconnect and not self._closing:
            self.start_reconnecting()

    def _notify(self, listeners: List[LifecycleListener]) -> None:
        for listener in list(listeners):
            try:
                listener()
            except Exception:
                logger.exception("Bridge lifecycle listener failed")


__all__ = [
    "BridgeClient",
    "BridgeDisconnectedError",
    "BridgeError",
    "BridgeNotConnectedError",
    "BridgeRequestError",
    "BridgeTimeoutError",
    "DEFAULT_RECONNECT_INTERVAL",
    "DEFAULT_REQUEST_TIMEOUT",
    "DEFAULT_SOCKET_PATH",
    "PeerLink",
]
