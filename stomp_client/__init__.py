"""STOMP 1.2 client for asyncio.

Async usage::

    from stomp_client import connect

    async with connect("localhost", 61613, heartbeat="5000,10000") as client:
        client.subscribe("/queue/orders")
        async for frame in client:
            print(frame.headers["destination"], frame.text)

Callbacks::

    client = StompClient("localhost")

    @client.on_message
    def handle(frame):
        print(frame.text)

    await client.connect()

Sync usage::

    from stomp_client import SyncStompClient

    client = SyncStompClient("localhost")
    client.connect()
    client.send("/queue/orders", body="hello")
    client.close()

STOMP over WebSocket::

    transport = WebSocketTransport("ws://localhost:15674/ws")
    async with StompClient("/", transport=transport) as client:
        ...
"""

from ._version import __version__
from .client import StompClient, connect
from .errors import (
    StompConnectionError,
    StompError,
    StompHeaderDecodeError,
    StompNotConnectedError,
    StompProtocolError,
    StompTimeoutError,
)
from .heartbeat import HeartbeatMonitor, negotiate
from .protocol import FrameParser, encode_frame
from .sync_client import SyncStompClient
from .transport import TcpTransport, Transport, WebSocketTransport
from .types import (
    AckMode,
    Command,
    ConnectionState,
    EventType,
    Frame,
    Heartbeat,
    HeartbeatIntervals,
    Subscription,
)

__all__ = [
    "__version__",
    "connect",
    "StompClient",
    "SyncStompClient",
    "Transport",
    "TcpTransport",
    "WebSocketTransport",
    "FrameParser",
    "encode_frame",
    "negotiate",
    "HeartbeatMonitor",
    "AckMode",
    "Command",
    "ConnectionState",
    "EventType",
    "Frame",
    "Heartbeat",
    "HeartbeatIntervals",
    "Subscription",
    "StompError",
    "StompConnectionError",
    "StompNotConnectedError",
    "StompTimeoutError",
    "StompProtocolError",
    "StompHeaderDecodeError",
]
