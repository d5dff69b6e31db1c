# =============================================================================
# STOMP Client -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# Header name -> value. Insertion order is the on-wire order when encoding;
# decoding keeps the first occurrence of a repeated name.
Headers = dict[str, str]


class ConnectionState(str, Enum):
    """Session lifecycle state.

    Flow: UNCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED.
    DISCONNECTED is terminal; a new client is needed to reconnect.
    """

    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Command(str, Enum):
    """STOMP 1.2 frame commands handled by this client."""

    CONNECT = "CONNECT"
    CONNECTED = "CONNECTED"
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    SEND = "SEND"
    MESSAGE = "MESSAGE"
    ACK = "ACK"
    NACK = "NACK"
    DISCONNECT = "DISCONNECT"
    RECEIPT = "RECEIPT"
    ERROR = "ERROR"


SERVER_COMMANDS = frozenset(
    {Command.CONNECTED, Command.MESSAGE, Command.RECEIPT, Command.ERROR}
)


class AckMode(str, Enum):
    """Subscription acknowledgment mode."""

    AUTO = "auto"
    CLIENT = "client"
    CLIENT_INDIVIDUAL = "client-individual"


class EventType(str, Enum):
    """Events emitted by :class:`~stomp_client.client.StompClient`.

    Payloads: SEND_FRAME(raw bytes), CONNECTED/MESSAGE/RECEIPT/ERROR(Frame),
    DISCONNECTED(), PROTOCOL_ERROR(exception).
    """

    SEND_FRAME = "SEND_FRAME"
    CONNECTED = "CONNECTED"
    MESSAGE = "MESSAGE"
    RECEIPT = "RECEIPT"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"


@dataclass(frozen=True, slots=True)
class Frame:
    """A decoded (or about to be encoded) STOMP frame.

    Attributes:
        command: Frame command.
        headers: Header mapping, already unescaped.
        body: Raw body bytes; empty for frames without one.
    """

    command: Command
    headers: Headers = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        """Body decoded as UTF-8."""
        return self.body.decode("utf-8")


@dataclass(frozen=True, slots=True)
class Heartbeat:
    """One side's heart-beat offer: ``"<send-ms>,<receive-ms>"``.

    Attributes:
        send: Smallest interval (ms) at which this side can send beats, 0 = never.
        receive: Desired interval (ms) between beats from the peer, 0 = none.
    """

    send: int = 0
    receive: int = 0

    @classmethod
    def parse(cls, value: str | Heartbeat | tuple[int, int] | None) -> Heartbeat:
        if value is None:
            return cls()
        if isinstance(value, Heartbeat):
            return value
        if isinstance(value, tuple):
            send, receive = value
        else:
            send, _, receive = value.partition(",")
        try:
            send, receive = int(send), int(receive)
        except ValueError:
            raise ValueError(f"Invalid heart-beat value: {value!r}") from None
        if send < 0 or receive < 0:
            raise ValueError(f"Invalid heart-beat value: {value!r}")
        return cls(send, receive)

    def __str__(self) -> str:
        return f"{self.send},{self.receive}"


@dataclass(frozen=True, slots=True)
class HeartbeatIntervals:
    """Effective intervals (ms) after negotiation, 0 = disabled.

    Attributes:
        outgoing: How often this client must send something.
        incoming: Longest silence tolerated from the broker (before margin).
    """

    outgoing: int = 0
    incoming: int = 0


@dataclass(frozen=True, slots=True)
class Subscription:
    """A tracked destination subscription."""

    destination: str
    id: str
    ack: AckMode = AckMode.AUTO


@dataclass
class ConnectionStats:
    """Counters for a single client session."""

    frames_sent: int = 0
    frames_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    heartbeats_sent: int = 0
    heartbeats_received: int = 0
    connected_since: float | None = None
