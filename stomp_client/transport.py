# =============================================================================
# STOMP Client -- Transports
# =============================================================================
#
# Byte-stream transports the client writes frames to and reads frames from.
# TcpTransport speaks raw STOMP over TCP; WebSocketTransport carries STOMP
# over WebSocket (subprotocol v12.stomp).
# =============================================================================

from __future__ import annotations

import asyncio
import socket
from typing import Any, Callable

import websockets
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ._logging import logger
from .constants import CONNECTION_TIMEOUT, WS_MAX_SIZE, WS_SUBPROTOCOLS
from .errors import StompConnectionError, StompTimeoutError


class Transport:
    """Bidirectional byte stream owned by a single client session.

    The owner assigns ``on_data`` (called with every chunk read) and
    ``on_lost`` (called once with the error, or ``None`` on a clean close,
    when the peer side goes away). Neither fires after :meth:`close`.
    """

    def __init__(self) -> None:
        self.on_data: Callable[[bytes], Any] | None = None
        self.on_lost: Callable[[Exception | None], Any] | None = None

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def open(self, host: str, port: int) -> None:
        """Connect; raise :class:`StompConnectionError` on failure."""
        raise NotImplementedError

    def write(self, data: bytes) -> bool:
        """Queue *data* for sending. Returns False once the transport is closed."""
        raise NotImplementedError

    def close(self) -> None:
        """Flush pending writes and close; safe to call repeatedly."""
        raise NotImplementedError

    async def wait_closed(self) -> None:
        """Wait until :meth:`close` has completed."""
        raise NotImplementedError

    def _deliver(self, data: bytes) -> None:
        if self.on_data:
            self.on_data(data)

    def _report_lost(self, exc: Exception | None) -> None:
        if self.on_lost:
            self.on_lost(exc)


# -- TCP ----------------------------------------------------------------------


class _StompStreamProtocol(asyncio.Protocol):
    def __init__(self, owner: TcpTransport) -> None:
        self._owner = owner

    def data_received(self, data: bytes) -> None:
        self._owner._deliver(data)

    def connection_lost(self, exc: Exception | None) -> None:
        self._owner._connection_lost(exc)


class TcpTransport(Transport):
    """STOMP over a plain TCP connection.

    Args:
        timeout: Seconds allowed for the TCP connect.
        ssl: Optional SSL context (or ``True``) passed to ``create_connection``.
    """

    def __init__(self, *, timeout: float = CONNECTION_TIMEOUT, ssl: Any = None) -> None:
        super().__init__()
        self._timeout = timeout
        self._ssl = ssl
        self._transport: asyncio.Transport | None = None
        self._closing = False
        self._closed: asyncio.Future[None] | None = None

    @property
    def is_open(self) -> bool:
        return (
            self._transport is not None
            and not self._closing
            and not self._transport.is_closing()
        )

    async def open(self, host: str, port: int) -> None:
        loop = asyncio.get_running_loop()
        self._closed = loop.create_future()
        try:
            transport, _ = await asyncio.wait_for(
                loop.create_connection(
                    lambda: _StompStreamProtocol(self), host, port, ssl=self._ssl
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self._mark_closed()
            raise StompTimeoutError(
                f"Connection to {host}:{port} timed out after {self._timeout}s"
            )
        except OSError as exc:
            self._mark_closed()
            raise StompConnectionError(f"Failed to connect to {host}:{port}: {exc}") from exc

        if self._closing:
            transport.close()
            raise StompConnectionError("Transport closed while connecting")

        sock = transport.get_extra_info("socket")
        if sock is not None:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._transport = transport  # type: ignore[assignment]
        logger.debug("TCP connection open to %s:%s", host, port)

    def write(self, data: bytes) -> bool:
        if not self.is_open:
            logger.debug("Write on closed transport dropped (%d bytes)", len(data))
            return False
        assert self._transport is not None
        self._transport.write(data)
        return True

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._transport is not None and not self._transport.is_closing():
            self._transport.close()
        elif self._transport is None:
            self._mark_closed()

    async def wait_closed(self) -> None:
        if self._closed is not None:
            await asyncio.shield(self._closed)

    def _connection_lost(self, exc: Exception | None) -> None:
        self._mark_closed()
        if self._closing:
            return
        self._closing = True
        logger.debug("TCP connection lost: %s", exc)
        self._report_lost(exc)

    def _mark_closed(self) -> None:
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)


# -- WebSocket ----------------------------------------------------------------


class WebSocketTransport(Transport):
    """STOMP over WebSocket.

    The ``host``/``port`` given to :meth:`open` are ignored in favour of *url*;
    the client still uses its host for the CONNECT ``host`` header.

    Args:
        url: WebSocket URL, e.g. ``"ws://localhost:15674/ws"``.
        timeout: Seconds allowed for the opening handshake.
        extra_headers: Additional HTTP headers for the handshake.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = CONNECTION_TIMEOUT,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__()
        self._url = url
        self._timeout = timeout
        self._extra_headers = extra_headers or {}
        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._outbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._recv_task: asyncio.Task[None] | None = None
        self._send_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    async def open(self, host: str, port: int) -> None:
        try:
            self._ws = await asyncio.wait_for(
                websockets.asyncio.client.connect(
                    self._url,
                    subprotocols=list(WS_SUBPROTOCOLS),
                    additional_headers=self._extra_headers,
                    max_size=WS_MAX_SIZE,
                    open_timeout=None,  # asyncio.wait_for handles timeout
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise StompTimeoutError(f"Connection timed out after {self._timeout}s")
        except Exception as exc:
            raise StompConnectionError(f"Failed to connect: {exc}") from exc

        if self._closing:
            await self._ws.close()
            raise StompConnectionError("Transport closed while connecting")

        self._recv_task = asyncio.create_task(self._recv_loop())
        self._send_task = asyncio.create_task(self._send_loop())
        logger.debug("WebSocket open to %s", self._url)

    def write(self, data: bytes) -> bool:
        if not self.is_open:
            logger.debug("Write on closed transport dropped (%d bytes)", len(data))
            return False
        self._outbox.put_nowait(data)
        return True

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        # The writer drains queued frames, then closes the socket.
        self._outbox.put_nowait(None)

    async def wait_closed(self) -> None:
        tasks = [t for t in (self._send_task, self._recv_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_loop(self) -> None:
        assert self._ws is not None
        try:
            while True:
                data = await self._outbox.get()
                if data is None:
                    break
                try:
                    message: str | bytes = data.decode("utf-8")
                except UnicodeDecodeError:
                    message = data
                await self._ws.send(message)
            await self._ws.close()
        except ConnectionClosed as exc:
            self._lost(exc)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Send loop error: %s", exc)
            self._lost(exc)
            await self._ws.close()

    async def _recv_loop(self) -> None:
        assert self._ws is not None
        try:
            async for message in self._ws:
                self._deliver(message.encode("utf-8") if isinstance(message, str) else message)
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as exc:
            self._lost(exc)
            return
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
            self._lost(exc)
            return
        self._lost(None)

    def _lost(self, exc: Exception | None) -> None:
        if self._closing:
            return
        self._closing = True
        self._outbox.put_nowait(None)
        logger.debug("WebSocket lost: %s", exc)
        self._report_lost(exc)
