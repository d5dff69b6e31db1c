# =============================================================================
# STOMP Client -- Async Client
# =============================================================================
#
# Primary public API: one STOMP 1.2 session over one transport.
#
#   UNCONNECTED --connect()--> CONNECTING --CONNECTED frame--> CONNECTED
#        transport failure / liveness failure / disconnect()  --> DISCONNECTED
#
# DISCONNECTED is terminal for the instance; there is no reconnection.
# =============================================================================

from __future__ import annotations

import asyncio
import time

from uuid import uuid4
from typing import Any, Callable, Mapping

from ._logging import logger
from .constants import (
    CLOSE_TIMEOUT,
    CONNECTION_TIMEOUT,
    DEFAULT_HEARTBEAT,
    DEFAULT_PORT,
    HEADER_ACCEPT_VERSION,
    HEADER_ACK,
    HEADER_CONTENT_LENGTH,
    HEADER_DESTINATION,
    HEADER_HEART_BEAT,
    HEADER_HOST,
    HEADER_ID,
    HEADER_LOGIN,
    HEADER_MESSAGE,
    HEADER_PASSCODE,
    HEADER_RECEIPT,
    HEADER_RECEIPT_ID,
    HEADER_SERVER,
    HEADER_SESSION,
    HEADER_VERSION,
    HEARTBEAT_FRAME,
    HEARTBEAT_TIMEOUT_MARGIN,
    MESSAGE_QUEUE_SIZE,
    PROTOCOL_VERSION,
)
from .errors import (
    StompConnectionError,
    StompError,
    StompNotConnectedError,
    StompProtocolError,
    StompTimeoutError,
)
from .events import AsyncEventHandler, EventDispatcher, EventHandler
from .heartbeat import HeartbeatMonitor, negotiate
from .protocol import FrameParser, encode_frame
from .subscriptions import SubscriptionRegistry
from .transport import TcpTransport, Transport
from .types import (
    AckMode,
    Command,
    ConnectionState,
    ConnectionStats,
    EventType,
    Frame,
    Heartbeat,
    HeartbeatIntervals,
    Subscription,
)

Handler = EventHandler | AsyncEventHandler


class StompClient:
    """Async STOMP 1.2 client for a single broker session.

    Args:
        host: Broker host name; also sent as the CONNECT ``host`` header.
        port: Broker port (default 61613).
        heartbeat: Client heart-beat offer, ``"<send-ms>,<receive-ms>"``.
        login: Optional ``login`` header for CONNECT.
        passcode: Optional ``passcode`` header for CONNECT.
        virtual_host: Overrides the CONNECT ``host`` header value.
        transport: Transport to use; defaults to :class:`TcpTransport`.
        heartbeat_margin: Milliseconds of slack added to the incoming interval.
        connect_timeout: Seconds allowed for the transport connect and, with
            ``connect(wait=True)``, for the CONNECTED frame.
        queue_size: Max MESSAGE frames buffered for async iteration. When
            full, oldest frames are dropped.

    Example::

        async with StompClient("localhost", heartbeat="5000,10000") as client:
            client.subscribe("/queue/orders", ack=AckMode.CLIENT_INDIVIDUAL)
            async for frame in client:
                print(frame.headers["destination"], frame.text)
                client.ack(frame.headers["ack"])
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        *,
        heartbeat: str | Heartbeat | tuple[int, int] = DEFAULT_HEARTBEAT,
        login: str | None = None,
        passcode: str | None = None,
        virtual_host: str | None = None,
        transport: Transport | None = None,
        heartbeat_margin: int = HEARTBEAT_TIMEOUT_MARGIN,
        connect_timeout: float = CONNECTION_TIMEOUT,
        queue_size: int = MESSAGE_QUEUE_SIZE,
    ) -> None:
        self._host = host
        self._port = port
        self._heartbeat = Heartbeat.parse(heartbeat)
        self._login = login
        self._passcode = passcode
        self._virtual_host = virtual_host
        self._connect_timeout = connect_timeout

        self._transport = transport or TcpTransport(timeout=connect_timeout)
        self._transport.on_data = self._on_data
        self._transport.on_lost = self._on_transport_lost

        # State
        self._state = ConnectionState.UNCONNECTED
        self._session: str | None = None
        self._version: str | None = None
        self._server: str | None = None
        self._server_heartbeat: Heartbeat | None = None
        self._disconnect_receipt: str | None = None
        self._handshake_done = asyncio.Event()
        self._stats = ConnectionStats()

        # Services
        self._events = EventDispatcher()
        self._subscriptions = SubscriptionRegistry()
        self._parser = FrameParser(
            on_frame=self._on_frame,
            on_heartbeat=self._on_heartbeat,
            on_error=self._on_protocol_error,
        )
        self._monitor = HeartbeatMonitor(
            self._send_heartbeat,
            self._on_heartbeat_timeout,
            margin_ms=heartbeat_margin,
        )

        # MESSAGE frames for async iteration; None marks the end.
        self._message_queue: asyncio.Queue[Frame | None] = asyncio.Queue(
            maxsize=queue_size
        )

        self._frame_handlers: dict[Command, Callable[[Frame], None]] = {
            Command.CONNECTED: self._handle_connected,
            Command.MESSAGE: self._handle_message,
            Command.RECEIPT: self._handle_receipt,
            Command.ERROR: self._handle_error,
        }

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> StompClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    # -- Async iterator -------------------------------------------------------

    def __aiter__(self) -> StompClient:
        return self

    async def __anext__(self) -> Frame:
        frame = await self._message_queue.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    # -- Connect / Disconnect -------------------------------------------------

    async def connect(self, *, wait: bool = True) -> None:
        """Open the transport and send CONNECT.

        Args:
            wait: Return only once the broker's CONNECTED frame arrived.

        Raises:
            StompConnectionError: If the transport cannot be opened, the
                session ends during the handshake, or this client was
                already used.
            StompTimeoutError: If CONNECTED does not arrive in time.
        """
        if self._state is not ConnectionState.UNCONNECTED:
            raise StompConnectionError(
                f"Client is {self._state.value}; create a new client to reconnect"
            )

        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._transport.open(self._host, self._port)
        except StompError as exc:
            logger.warning("Connect to %s:%s failed: %s", self._host, self._port, exc)
            self._teardown()
            if isinstance(exc, StompConnectionError):
                raise
            raise StompConnectionError(str(exc)) from exc

        if self._state is not ConnectionState.CONNECTING:
            raise StompConnectionError("Connection lost while connecting")

        self._send_frame(Command.CONNECT, self._connect_headers())

        if not wait:
            return
        try:
            await asyncio.wait_for(
                self._handshake_done.wait(), timeout=self._connect_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "CONNECTED not received within %.1fs", self._connect_timeout
            )
            self._teardown()
            raise StompTimeoutError(
                f"CONNECTED not received within {self._connect_timeout}s"
            )
        if not self.is_connected:
            raise StompConnectionError("Connection closed during handshake")

    async def disconnect(self) -> None:
        """Send DISCONNECT and tear the session down locally.

        The broker's RECEIPT is not awaited; frames still in flight from the
        broker may be lost.
        """
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        self._disconnect_receipt = uuid4().hex
        try:
            self._send_frame(
                Command.DISCONNECT, {HEADER_RECEIPT: self._disconnect_receipt}
            )
        except StompNotConnectedError:
            logger.debug("DISCONNECT not sent, transport already closed")
        self._teardown()
        try:
            await asyncio.wait_for(self._transport.wait_closed(), timeout=CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Transport did not close within %.1fs", CLOSE_TIMEOUT)
        self._events.cancel_tasks()

    async def close(self) -> None:
        """Alias for disconnect."""
        await self.disconnect()

    # -- Properties -----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def session(self) -> str | None:
        return self._session

    @property
    def version(self) -> str | None:
        return self._version

    @property
    def server(self) -> str | None:
        return self._server

    @property
    def heartbeat(self) -> Heartbeat:
        return self._heartbeat

    @property
    def server_heartbeat(self) -> Heartbeat | None:
        return self._server_heartbeat

    @property
    def intervals(self) -> HeartbeatIntervals:
        return self._monitor.intervals

    @property
    def subscriptions(self) -> list[Subscription]:
        return self._subscriptions.all()

    @property
    def queue_size(self) -> int:
        """Number of MESSAGE frames waiting in the iterator queue."""
        return self._message_queue.qsize()

    # -- Subscribe / Send / Ack -----------------------------------------------

    def subscribe(
        self,
        destination: str,
        ack: AckMode | str = AckMode.AUTO,
        id: str | int | None = None,
    ) -> str:
        """Subscribe to *destination*; a repeat call returns the existing id.

        Args:
            destination: Broker destination, e.g. ``"/queue/orders"``.
            ack: ``auto``, ``client`` or ``client-individual``.
            id: Subscription id; random when omitted.

        Returns:
            The subscription id.
        """
        self._ensure_open()
        sub, created = self._subscriptions.add(destination, ack, id)
        if created:
            self._send_frame(
                Command.SUBSCRIBE,
                {
                    HEADER_DESTINATION: sub.destination,
                    HEADER_ID: sub.id,
                    HEADER_ACK: sub.ack.value,
                },
            )
        return sub.id

    def unsubscribe(self, id: str | int) -> None:
        """Send UNSUBSCRIBE for *id*, tracked or not."""
        self._ensure_open()
        self._subscriptions.remove_id(id)
        self._send_frame(Command.UNSUBSCRIBE, {HEADER_ID: str(id)})

    def send(
        self,
        destination: str,
        headers: Mapping[str, Any] | None = None,
        body: bytes | str | None = None,
    ) -> None:
        """Send a message to *destination*.

        ``content-length`` defaults to the body's byte length unless the
        caller supplies one. *headers* is not modified.
        """
        self._ensure_open()
        if isinstance(body, str):
            body = body.encode("utf-8")
        body = body or b""

        frame_headers = dict(headers or {})
        frame_headers.setdefault(HEADER_CONTENT_LENGTH, len(body))
        frame_headers[HEADER_DESTINATION] = destination
        self._send_frame(Command.SEND, frame_headers, body)

    def ack(self, msg_id: str) -> None:
        """Acknowledge the message whose ``ack`` header is *msg_id*."""
        self._ensure_open()
        self._send_frame(Command.ACK, {HEADER_ID: msg_id})

    def nack(self, msg_id: str) -> None:
        """Reject the message whose ``ack`` header is *msg_id*."""
        self._ensure_open()
        self._send_frame(Command.NACK, {HEADER_ID: msg_id})

    # -- Handler registration -------------------------------------------------

    def on(self, event: EventType | str) -> Callable[[Handler], Handler]:
        """Decorator to register a handler for *event*.

        Example::

            @client.on(EventType.MESSAGE)
            async def handle(frame: Frame):
                print(frame.text)
        """
        return self._events.on(event)

    def on_any(self, fn: Handler) -> Handler:
        """Register a handler called as ``fn(event_type, *payload)``."""
        return self._events.on_any(fn)

    def off(self, event: EventType | str, fn: Handler) -> None:
        """Remove a specific handler."""
        self._events.off(event, fn)

    def on_send_frame(self, fn: Handler) -> Handler:
        return self._events.on(EventType.SEND_FRAME)(fn)

    def on_connected(self, fn: Handler) -> Handler:
        return self._events.on(EventType.CONNECTED)(fn)

    def on_message(self, fn: Handler) -> Handler:
        return self._events.on(EventType.MESSAGE)(fn)

    def on_receipt(self, fn: Handler) -> Handler:
        return self._events.on(EventType.RECEIPT)(fn)

    def on_error(self, fn: Handler) -> Handler:
        return self._events.on(EventType.ERROR)(fn)

    def on_disconnected(self, fn: Handler) -> Handler:
        return self._events.on(EventType.DISCONNECTED)(fn)

    def on_protocol_error(self, fn: Handler) -> Handler:
        return self._events.on(EventType.PROTOCOL_ERROR)(fn)

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return client statistics."""
        intervals = self._monitor.intervals
        return {
            "state": self._state.value,
            "session": self._session,
            "server": self._server,
            "subscriptions": self._subscriptions.destinations(),
            "frames_sent": self._stats.frames_sent,
            "frames_received": self._stats.frames_received,
            "bytes_sent": self._stats.bytes_sent,
            "bytes_received": self._stats.bytes_received,
            "heartbeats_sent": self._stats.heartbeats_sent,
            "heartbeats_received": self._stats.heartbeats_received,
            "connected_since": self._stats.connected_since,
            "heartbeat": {
                "outgoing_ms": intervals.outgoing,
                "incoming_ms": intervals.incoming,
            },
            "queue_size": self._message_queue.qsize(),
        }

    # -- Internal: outbound ---------------------------------------------------

    def _connect_headers(self) -> dict[str, str]:
        headers = {
            HEADER_ACCEPT_VERSION: PROTOCOL_VERSION,
            HEADER_HOST: self._virtual_host or self._host,
            HEADER_HEART_BEAT: str(self._heartbeat),
        }
        if self._login is not None:
            headers[HEADER_LOGIN] = self._login
        if self._passcode is not None:
            headers[HEADER_PASSCODE] = self._passcode
        return headers

    def _ensure_open(self) -> None:
        if not self._transport.is_open or self._state not in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ):
            raise StompNotConnectedError(f"Cannot send frames while {self._state.value}")

    def _send_frame(
        self,
        command: Command,
        headers: Mapping[str, Any],
        body: bytes | None = None,
    ) -> None:
        raw = encode_frame(command, headers, body)
        logger.debug("Sending %s frame (%d bytes)", command.value, len(raw))
        if not self._transport.write(raw):
            raise StompNotConnectedError(f"Transport closed, {command.value} not sent")
        self._events.emit(EventType.SEND_FRAME, raw)
        self._stats.frames_sent += 1
        self._stats.bytes_sent += len(raw)
        self._monitor.reset_outgoing()

    def _send_heartbeat(self) -> None:
        if self._transport.write(HEARTBEAT_FRAME):
            self._stats.heartbeats_sent += 1
            self._stats.bytes_sent += len(HEARTBEAT_FRAME)
        else:
            logger.debug("Heartbeat skipped, transport closed")

    # -- Internal: inbound ----------------------------------------------------

    def _on_data(self, data: bytes) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._stats.bytes_received += len(data)
        self._monitor.reset_incoming()
        self._parser.feed(data)

    def _on_heartbeat(self) -> None:
        self._stats.heartbeats_received += 1

    def _on_frame(self, frame: Frame) -> None:
        # A teardown triggered by an earlier frame of the same chunk
        # stops dispatch of the rest.
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._stats.frames_received += 1
        logger.debug("Received %s frame", frame.command.value)
        handler = self._frame_handlers.get(frame.command)
        if handler is not None:
            handler(frame)

    def _on_protocol_error(self, exc: StompProtocolError) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._events.emit(EventType.PROTOCOL_ERROR, exc)

    # -- Frame handlers -------------------------------------------------------

    def _handle_connected(self, frame: Frame) -> None:
        if self._state is not ConnectionState.CONNECTING:
            logger.warning("Ignoring CONNECTED frame while %s", self._state.value)
            return

        headers = frame.headers
        self._session = headers.get(HEADER_SESSION)
        self._version = headers.get(HEADER_VERSION)
        self._server = headers.get(HEADER_SERVER)
        try:
            self._server_heartbeat = Heartbeat.parse(headers.get(HEADER_HEART_BEAT))
        except ValueError:
            logger.warning(
                "Malformed heart-beat header %r, heart-beating disabled",
                headers.get(HEADER_HEART_BEAT),
            )
            self._server_heartbeat = Heartbeat()

        self._stats.connected_since = time.monotonic()
        self._set_state(ConnectionState.CONNECTED)
        self._monitor.start(negotiate(self._heartbeat, self._server_heartbeat))
        logger.info(
            "Connected to %s:%s (session=%s, version=%s, server=%s)",
            self._host,
            self._port,
            self._session,
            self._version,
            self._server,
        )
        self._handshake_done.set()
        self._events.emit(EventType.CONNECTED, frame)

    def _handle_message(self, frame: Frame) -> None:
        self._events.emit(EventType.MESSAGE, frame)
        try:
            self._message_queue.put_nowait(frame)
        except asyncio.QueueFull:
            # Drop oldest to make room
            try:
                self._message_queue.get_nowait()
                self._message_queue.put_nowait(frame)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    def _handle_receipt(self, frame: Frame) -> None:
        receipt_id = frame.headers.get(HEADER_RECEIPT_ID)
        if receipt_id is not None and receipt_id == self._disconnect_receipt:
            logger.debug("DISCONNECT receipt %s received", receipt_id)
        self._events.emit(EventType.RECEIPT, frame)

    def _handle_error(self, frame: Frame) -> None:
        logger.warning(
            "Broker ERROR: %s", frame.headers.get(HEADER_MESSAGE, "(no message)")
        )
        self._events.emit(EventType.ERROR, frame)

    # -- Internal: failure / teardown -----------------------------------------

    def _on_transport_lost(self, exc: Exception | None) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            return
        logger.warning("Connection to %s:%s lost: %s", self._host, self._port, exc)
        self._teardown()

    def _on_heartbeat_timeout(self) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            return
        logger.warning(
            "No data from %s:%s within %dms, connection considered dead",
            self._host,
            self._port,
            self._monitor.intervals.incoming,
        )
        self._teardown()

    def _teardown(self) -> None:
        """Cancel timers, close the transport, emit DISCONNECTED once."""
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._monitor.stop()
        self._transport.close()
        self._parser.reset()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s:%s", self._host, self._port)

        self._handshake_done.set()
        try:
            self._message_queue.put_nowait(None)
        except asyncio.QueueFull:
            try:
                self._message_queue.get_nowait()
                self._message_queue.put_nowait(None)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass
        self._events.emit(EventType.DISCONNECTED)

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state is self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)


def connect(
    host: str,
    port: int = DEFAULT_PORT,
    heartbeat: str | Heartbeat | tuple[int, int] = DEFAULT_HEARTBEAT,
    **kwargs: Any,
) -> StompClient:
    """Create a STOMP client for use as an async context manager.

    Keyword arguments are forwarded to :class:`StompClient`.

    Example::

        async with connect("localhost", heartbeat="5000,10000") as client:
            client.send("/queue/a", body="hi")
    """
    return StompClient(host, port, heartbeat=heartbeat, **kwargs)
