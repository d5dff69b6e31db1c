# =============================================================================
# STOMP Client -- Synchronous Wrapper
# =============================================================================
#
# Thread-based wrapper around StompClient for blocking usage. The asyncio
# loop owning the session runs on one background thread; every call from
# other threads is marshalled onto it, so session state is only ever
# touched by that thread.
# =============================================================================

from __future__ import annotations

import asyncio
import functools
import queue
import threading
from typing import Any, Callable, Mapping

from ._logging import logger
from .client import StompClient
from .errors import StompConnectionError, StompTimeoutError
from .types import AckMode, ConnectionState, EventType, Frame


class SyncStompClient:
    """Blocking / thread-based STOMP client.

    Runs a :class:`StompClient` on a background thread. Public methods are
    thread-safe and block until the frame has been handed to the transport.
    Handlers registered with :meth:`on` run on the background thread and
    may be added or removed at any time.

    Args:
        host: Broker host name.
        port: Broker port.
        queue_size: Max MESSAGE frames buffered for :meth:`recv`.
        **kwargs: Passed to :class:`StompClient`.

    Example::

        client = SyncStompClient("localhost", heartbeat="5000,10000")
        client.connect()
        client.subscribe("/queue/a")
        frame = client.recv(timeout=5.0)
        client.close()
    """

    def __init__(
        self,
        host: str,
        port: int | None = None,
        *,
        queue_size: int = 1000,
        **kwargs: Any,
    ) -> None:
        self._host = host
        self._port = port
        self._kwargs = kwargs

        self._message_queue: queue.Queue[Frame | None] = queue.Queue(maxsize=queue_size)
        self._handlers: dict[EventType, list[Callable[..., Any]]] = {}

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._client: StompClient | None = None
        self._running = False
        self._connected_event = threading.Event()
        self._stop: asyncio.Event | None = None
        self._connect_error: Exception | None = None

    # -- Lifecycle ------------------------------------------------------------

    def connect(self, timeout: float = 15.0) -> None:
        """Connect in a background thread.  Blocks until CONNECTED."""
        if self._running:
            return

        self._running = True
        self._connected_event.clear()
        self._connect_error = None
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="stomp-client"
        )
        self._thread.start()

        if not self._connected_event.wait(timeout=timeout):
            self.close()
            raise StompTimeoutError(f"Connection timed out after {timeout}s")

        err = self._connect_error
        if err is not None:
            self._running = False
            if self._thread.is_alive():
                self._thread.join(timeout=3.0)
            raise StompConnectionError(f"Connection failed: {err}") from err

    def close(self) -> None:
        """Disconnect and stop the background thread."""
        self._running = False
        loop, stop = self._loop, self._stop
        if loop is not None and stop is not None:
            try:
                loop.call_soon_threadsafe(stop.set)
            except RuntimeError:
                pass  # loop already closed

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

    def disconnect(self) -> None:
        """Alias for close."""
        self.close()

    # -- Frames ---------------------------------------------------------------

    def subscribe(
        self,
        destination: str,
        ack: AckMode | str = AckMode.AUTO,
        id: str | int | None = None,
    ) -> str:
        """Subscribe to *destination*; returns the subscription id."""
        return self._call(lambda c: c.subscribe(destination, ack, id))

    def unsubscribe(self, id: str | int) -> None:
        self._call(lambda c: c.unsubscribe(id))

    def send(
        self,
        destination: str,
        headers: Mapping[str, Any] | None = None,
        body: bytes | str | None = None,
    ) -> None:
        self._call(lambda c: c.send(destination, headers, body))

    def ack(self, msg_id: str) -> None:
        self._call(lambda c: c.ack(msg_id))

    def nack(self, msg_id: str) -> None:
        self._call(lambda c: c.nack(msg_id))

    # -- Receive --------------------------------------------------------------

    def recv(self, timeout: float | None = None) -> Frame:
        """Receive the next MESSAGE frame. Blocks until available.

        Raises:
            StompTimeoutError: If *timeout* expires.
            StompConnectionError: If the connection is closed.
        """
        try:
            frame = self._message_queue.get(timeout=timeout)
        except queue.Empty:
            raise StompTimeoutError("recv() timed out")

        if frame is None:
            raise StompConnectionError("Connection closed")
        return frame

    # -- Handler registration -------------------------------------------------

    def on(
        self, event: EventType | str
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator for event handlers (run on the client thread)."""
        event = EventType(event)

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self._handlers.setdefault(event, []).append(fn)
            return fn

        return decorator

    def off(self, event: EventType | str, fn: Callable[..., Any]) -> None:
        """Remove a specific handler."""
        handlers = self._handlers.get(EventType(event), [])
        if fn in handlers:
            handlers.remove(fn)

    # -- Properties -----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    @property
    def state(self) -> ConnectionState:
        if self._client:
            return self._client.state
        return ConnectionState.UNCONNECTED

    @property
    def queue_size(self) -> int:
        return self._message_queue.qsize()

    def get_stats(self) -> dict[str, Any]:
        if self._client:
            return self._call(lambda c: c.get_stats())
        return {}

    # -- Internal -------------------------------------------------------------

    def _call(self, fn: Callable[[StompClient], Any], timeout: float = 5.0) -> Any:
        """Run *fn* against the client on the loop thread and return its result."""
        loop, client = self._loop, self._client
        if loop is None or client is None:
            raise StompConnectionError("Not connected")

        async def _invoke() -> Any:
            return fn(client)

        future = asyncio.run_coroutine_threadsafe(_invoke(), loop)
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            future.cancel()
            raise StompTimeoutError(f"Client call timed out after {timeout}s") from None

    def _run_loop(self) -> None:
        """Background thread: run the async event loop."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            loop.run_until_complete(self._async_main())
        except Exception as exc:
            logger.error("Background loop error: %s", exc)
        finally:
            self._loop = None
            loop.close()

    async def _async_main(self) -> None:
        """Async entry point in the background thread."""
        self._stop = asyncio.Event()
        kwargs = dict(self._kwargs)
        if self._port is not None:
            kwargs["port"] = self._port
        client = StompClient(self._host, **kwargs)
        self._client = client

        # Ahead of _enqueue, so handlers have run by the time recv() returns.
        for event in EventType:
            client.on(event)(functools.partial(self._dispatch_to_handlers, event))
        client.on_message(self._enqueue)
        client.on_disconnected(self._on_disconnected)

        try:
            await client.connect()
        except Exception as exc:
            self._connect_error = exc
            logger.error("Client error: %s", exc)
            self._connected_event.set()
            return

        self._connected_event.set()
        try:
            await self._stop.wait()
        finally:
            await client.disconnect()

    def _dispatch_to_handlers(self, event: EventType, *args: Any) -> None:
        """Call registered handlers, looked up at dispatch time."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as exc:
                logger.error("Handler error for '%s': %s", event.value, exc)

    def _enqueue(self, frame: Frame) -> None:
        try:
            self._message_queue.put_nowait(frame)
        except queue.Full:
            # Drop oldest
            try:
                self._message_queue.get_nowait()
                self._message_queue.put_nowait(frame)
            except (queue.Empty, queue.Full):
                pass

    def _on_disconnected(self) -> None:
        self._enqueue(None)  # type: ignore[arg-type]
        if self._stop is not None:
            self._stop.set()
