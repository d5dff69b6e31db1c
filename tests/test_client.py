"""Tests for StompClient (unit tests with an in-memory transport)."""

import asyncio
from unittest.mock import MagicMock

import pytest

from stomp_client.client import StompClient, connect
from stomp_client.errors import (
    StompConnectionError,
    StompNotConnectedError,
    StompTimeoutError,
)
from stomp_client.protocol import FrameParser
from stomp_client.types import (
    AckMode,
    Command,
    ConnectionState,
    EventType,
    Frame,
    Heartbeat,
    HeartbeatIntervals,
)

from tests.fakes import CONNECTED_FRAME, FakeLoop, FakeTransport, connected_frame


def _decode_sent(raw: bytes) -> Frame:
    frames = []
    parser = FrameParser(frames.append, commands=list(Command))
    parser.feed(raw)
    assert len(frames) == 1
    return frames[0]


class TestInitialState:
    def test_defaults(self, client):
        assert client.state is ConnectionState.UNCONNECTED
        assert client.is_connected is False
        assert client.port == 61613
        assert client.heartbeat == Heartbeat(0, 0)
        assert client.session is None
        assert client.intervals == HeartbeatIntervals(0, 0)

    def test_factory(self):
        client = connect("mq", 1234, "100,200", transport=FakeTransport())
        assert isinstance(client, StompClient)
        assert client.port == 1234
        assert client.heartbeat == Heartbeat(100, 200)

    def test_operations_require_connection(self, client):
        with pytest.raises(StompNotConnectedError):
            client.subscribe("/queue/a")
        with pytest.raises(StompNotConnectedError):
            client.send("/queue/a", body="hi")
        with pytest.raises(StompNotConnectedError):
            client.ack("m1")


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_writes_connect_frame(self, transport):
        client = StompClient(
            "broker", 1234, heartbeat="5000,10000", login="guest", passcode="p:w",
            transport=transport,
        )
        await client.connect(wait=False)

        assert transport.address == ("broker", 1234)
        assert client.state is ConnectionState.CONNECTING
        assert transport.frames[0] == (
            b"CONNECT\naccept-version:1.2\nhost:broker\nheart-beat:5000,10000\n"
            b"login:guest\npasscode:p:w\n\n\x00"
        )

    @pytest.mark.asyncio
    async def test_virtual_host(self, transport):
        client = StompClient("10.0.0.1", virtual_host="/vhost", transport=transport)
        await client.connect(wait=False)
        assert b"host:/vhost\n" in transport.frames[0]

    @pytest.mark.asyncio
    async def test_connected_frame_establishes_session(self, client, open_session):
        handler = MagicMock()
        client.on_connected(handler)
        await open_session()

        assert client.state is ConnectionState.CONNECTED
        assert client.is_connected is True
        assert client.session == "sess-1"
        assert client.version == "1.2"
        assert client.server == "FakeMQ/1.0"
        assert client.server_heartbeat == Heartbeat(0, 0)
        frame = handler.call_args[0][0]
        assert frame.command is Command.CONNECTED
        assert frame.headers["session"] == "sess-1"

    @pytest.mark.asyncio
    async def test_connect_waits_for_connected(self, client, transport):
        task = asyncio.create_task(client.connect())
        for _ in range(5):
            await asyncio.sleep(0)
        assert transport.commands() == ["CONNECT"]
        assert not task.done()

        transport.receive(CONNECTED_FRAME)
        await asyncio.wait_for(task, timeout=1.0)
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_context_manager(self, client, transport):
        async def broker():
            while not transport.frames:
                await asyncio.sleep(0)
            transport.receive(CONNECTED_FRAME)

        asyncio.create_task(broker())
        async with client:
            assert client.is_connected
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.commands() == ["CONNECT", "DISCONNECT"]

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, transport):
        client = StompClient("broker", transport=transport, connect_timeout=0.05)
        disconnected = MagicMock()
        client.on_disconnected(disconnected)

        with pytest.raises(StompTimeoutError):
            await client.connect()
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.closed
        disconnected.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_transport_failure_during_handshake(self, client, transport):
        task = asyncio.create_task(client.connect())
        for _ in range(5):
            await asyncio.sleep(0)
        transport.drop(ConnectionResetError("reset"))
        with pytest.raises(StompConnectionError):
            await task

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        transport = FakeTransport(fail=StompConnectionError("refused"))
        client = StompClient("broker", transport=transport)
        disconnected = MagicMock()
        client.on_disconnected(disconnected)

        with pytest.raises(StompConnectionError):
            await client.connect()
        assert client.state is ConnectionState.DISCONNECTED
        assert client.is_connected is False
        assert transport.closed
        disconnected.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_connect_timeout_error_wrapped(self):
        transport = FakeTransport(fail=StompTimeoutError("slow"))
        client = StompClient("broker", transport=transport)
        with pytest.raises(StompConnectionError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_disconnected_is_terminal(self, client, open_session):
        await open_session()
        await client.disconnect()
        with pytest.raises(StompConnectionError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, client):
        await client.connect(wait=False)
        with pytest.raises(StompConnectionError):
            await client.connect(wait=False)

    @pytest.mark.asyncio
    async def test_second_connected_frame_ignored(self, client, transport, open_session):
        handler = MagicMock()
        client.on_connected(handler)
        await open_session()
        transport.receive(connected_frame("1000,1000"))
        assert handler.call_count == 1
        assert client.server_heartbeat == Heartbeat(0, 0)


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_subscribe_writes_frame(self, client, transport, open_session):
        await open_session()
        sub_id = client.subscribe("/queue/a", AckMode.CLIENT, id="s1")

        assert sub_id == "s1"
        frame = _decode_sent(transport.frames[-1])
        assert frame.command is Command.SUBSCRIBE
        assert frame.headers == {"destination": "/queue/a", "id": "s1", "ack": "client"}

    @pytest.mark.asyncio
    async def test_subscribe_twice_single_frame(self, client, transport, open_session):
        await open_session()
        first = client.subscribe("/queue/a")
        second = client.subscribe("/queue/a", AckMode.CLIENT_INDIVIDUAL)

        assert first == second
        assert transport.commands().count("SUBSCRIBE") == 1

    @pytest.mark.asyncio
    async def test_subscribe_while_connecting(self, client, transport):
        await client.connect(wait=False)
        client.subscribe("/queue/a")
        assert transport.commands() == ["CONNECT", "SUBSCRIBE"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, client, transport, open_session):
        await open_session()
        sub_id = client.subscribe("/queue/a")
        client.unsubscribe(sub_id)

        frame = _decode_sent(transport.frames[-1])
        assert frame.command is Command.UNSUBSCRIBE
        assert frame.headers == {"id": sub_id}
        assert client.subscriptions == []

        # The destination can be subscribed again.
        client.subscribe("/queue/a")
        assert transport.commands().count("SUBSCRIBE") == 2

    @pytest.mark.asyncio
    async def test_unsubscribe_untracked_id(self, client, transport, open_session):
        await open_session()
        client.unsubscribe("never-subscribed")
        assert _decode_sent(transport.frames[-1]).headers == {"id": "never-subscribed"}


class TestSend:
    @pytest.mark.asyncio
    async def test_send_scenario(self, client, transport, open_session):
        await open_session()
        client.send("/queue/a", {}, "hi")

        raw = transport.frames[-1]
        assert raw.endswith(b"\n\nhi\x00")
        frame = _decode_sent(raw)
        assert frame.command is Command.SEND
        assert frame.headers == {"content-length": "2", "destination": "/queue/a"}
        assert frame.body == b"hi"

    @pytest.mark.asyncio
    async def test_send_without_body(self, client, transport, open_session):
        await open_session()
        client.send("/queue/a")
        frame = _decode_sent(transport.frames[-1])
        assert frame.headers["content-length"] == "0"
        assert frame.body == b""

    @pytest.mark.asyncio
    async def test_content_length_is_byte_length(self, client, transport, open_session):
        await open_session()
        client.send("/queue/a", body="héllo")
        frame = _decode_sent(transport.frames[-1])
        assert frame.headers["content-length"] == "6"
        assert frame.text == "héllo"

    @pytest.mark.asyncio
    async def test_binary_body_with_nul(self, client, transport, open_session):
        await open_session()
        client.send("/queue/a", body=b"a\x00b")
        assert _decode_sent(transport.frames[-1]).body == b"a\x00b"

    @pytest.mark.asyncio
    async def test_caller_headers_kept_and_not_mutated(self, client, transport, open_session):
        await open_session()
        headers = {"content-type": "text/plain", "content-length": "2"}
        client.send("/queue/a", headers, "hi")

        frame = _decode_sent(transport.frames[-1])
        assert frame.headers == {
            "content-type": "text/plain",
            "content-length": "2",
            "destination": "/queue/a",
        }
        assert headers == {"content-type": "text/plain", "content-length": "2"}

    @pytest.mark.asyncio
    async def test_send_frame_event(self, client, transport, open_session):
        handler = MagicMock()
        client.on_send_frame(handler)
        await open_session()
        client.send("/queue/a", body="hi")
        raws = [c.args[0] for c in handler.call_args_list]
        assert raws == transport.frames

    @pytest.mark.asyncio
    async def test_unwritten_frame_not_reported(self, client, transport):
        handler = MagicMock()
        client.on_send_frame(handler)
        await client.connect(wait=False)
        transport.closed = True

        await client.disconnect()

        assert transport.commands() == ["CONNECT"]
        assert [c.args[0] for c in handler.call_args_list] == transport.frames
        assert client.get_stats()["frames_sent"] == 1

    @pytest.mark.asyncio
    async def test_ack_nack(self, client, transport, open_session):
        await open_session()
        client.ack("m1")
        client.nack("m2")
        ack, nack = (_decode_sent(raw) for raw in transport.frames[-2:])
        assert (ack.command, ack.headers) == (Command.ACK, {"id": "m1"})
        assert (nack.command, nack.headers) == (Command.NACK, {"id": "m2"})

    @pytest.mark.asyncio
    async def test_header_values_escaped(self, client, transport, open_session):
        await open_session()
        client.send("/queue/a", {"note": "a:b\nc"}, "x")
        assert b"note:a\\cb\\nc\n" in transport.frames[-1]

    @pytest.mark.asyncio
    async def test_stats(self, client, transport, open_session):
        await open_session()
        client.send("/queue/a", body="hi")
        stats = client.get_stats()
        assert stats["state"] == "connected"
        assert stats["frames_sent"] == 2
        assert stats["frames_received"] == 1
        assert stats["bytes_sent"] == sum(len(f) for f in transport.frames)
        assert stats["bytes_received"] == len(CONNECTED_FRAME)


class TestInbound:
    @pytest.mark.asyncio
    async def test_message_event(self, client, transport, open_session):
        handler = MagicMock()
        client.on_message(handler)
        await open_session()
        transport.receive(b"MESSAGE\ndestination:/queue/a\nmessage-id:7\n\nhello\x00")

        frame = handler.call_args[0][0]
        assert frame.headers["message-id"] == "7"
        assert frame.body == b"hello"

    @pytest.mark.asyncio
    async def test_receipt_and_error_events(self, client, transport, open_session):
        receipts, errors = MagicMock(), MagicMock()
        client.on_receipt(receipts)
        client.on_error(errors)
        await open_session()
        transport.receive(b"RECEIPT\nreceipt-id:r1\n\n\x00")
        transport.receive(b"ERROR\nmessage:malformed\n\nbad frame\x00")

        assert receipts.call_args[0][0].headers == {"receipt-id": "r1"}
        error = errors.call_args[0][0]
        assert error.headers["message"] == "malformed"
        assert error.body == b"bad frame"
        # A broker ERROR is not a local fault.
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_protocol_error_event(self, client, transport, open_session):
        errors, messages = MagicMock(), MagicMock()
        client.on_protocol_error(errors)
        client.on_message(messages)
        await open_session()
        transport.receive(b"MESSAGE\ndestination:\\z\n\nx\x00")

        errors.assert_called_once()
        messages.assert_not_called()
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_split_delivery(self, client, transport, open_session):
        handler = MagicMock()
        client.on_message(handler)
        await open_session()
        for chunk in (b"MESS", b"AGE\ncontent-le", b"ngth:3\n", b"\nab", b"c\x00"):
            transport.receive(chunk)
        assert handler.call_args[0][0].body == b"abc"

    @pytest.mark.asyncio
    async def test_async_iteration(self, client, transport, open_session):
        await open_session()
        transport.receive(b"MESSAGE\nmessage-id:1\n\none\x00MESSAGE\nmessage-id:2\n\ntwo\x00")
        transport.drop()

        bodies = [frame.body async for frame in client]
        assert bodies == [b"one", b"two"]

    @pytest.mark.asyncio
    async def test_queue_drops_oldest(self, transport):
        client = StompClient("broker", transport=transport, queue_size=2)
        await client.connect(wait=False)
        transport.receive(CONNECTED_FRAME)
        for i in range(3):
            transport.receive(f"MESSAGE\nmessage-id:{i}\n\n{i}\x00".encode())
        assert client.queue_size == 2
        assert (await client.__anext__()).body == b"1"

    @pytest.mark.asyncio
    async def test_heartbeat_counted(self, client, transport, open_session):
        await open_session()
        transport.receive(b"\n\n")
        assert client.get_stats()["heartbeats_received"] == 2

    @pytest.mark.asyncio
    async def test_wildcard_handler(self, client, transport, open_session):
        seen = []
        client.on_any(lambda event, *args: seen.append(event))
        await open_session()
        assert seen == [EventType.SEND_FRAME, EventType.CONNECTED]


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_sends_frame_with_receipt(self, client, transport, open_session):
        disconnected = MagicMock()
        client.on_disconnected(disconnected)
        await open_session()
        await client.disconnect()

        frame = _decode_sent(transport.frames[-1])
        assert frame.command is Command.DISCONNECT
        assert frame.headers["receipt"]
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.closed
        disconnected.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_fresh_receipt_per_client(self):
        receipts = []
        for _ in range(2):
            transport = FakeTransport()
            client = StompClient("broker", transport=transport)
            await client.connect(wait=False)
            transport.receive(CONNECTED_FRAME)
            await client.disconnect()
            receipts.append(_decode_sent(transport.frames[-1]).headers["receipt"])
        assert receipts[0] != receipts[1]

    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, client, open_session):
        disconnected = MagicMock()
        client.on_disconnected(disconnected)
        await open_session()
        await client.disconnect()
        await client.disconnect()
        disconnected.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_disconnect_before_connect_is_noop(self, client, transport):
        await client.disconnect()
        assert client.state is ConnectionState.UNCONNECTED
        assert transport.written == []

    @pytest.mark.asyncio
    async def test_transport_error(self, client, transport, open_session):
        disconnected = MagicMock()
        client.on_disconnected(disconnected)
        await open_session()
        transport.drop(ConnectionResetError("reset by peer"))

        assert client.state is ConnectionState.DISCONNECTED
        assert client.is_connected is False
        disconnected.assert_called_once_with()
        with pytest.raises(StompNotConnectedError):
            client.send("/queue/a", body="late")

    @pytest.mark.asyncio
    async def test_no_frames_after_disconnect(self, client, transport, open_session):
        handler = MagicMock()
        client.on_message(handler)
        await open_session()
        await client.disconnect()
        transport.receive(b"MESSAGE\n\nlate\x00")
        handler.assert_not_called()


class TestHeartbeating:
    async def _open(self, heartbeat, server_heartbeat, margin=1000):
        transport = FakeTransport()
        client = StompClient(
            "broker", heartbeat=heartbeat, transport=transport, heartbeat_margin=margin
        )
        loop = FakeLoop()
        client._monitor._loop = loop
        await client.connect(wait=False)
        transport.receive(connected_frame(server_heartbeat))
        return client, transport, loop

    @pytest.mark.asyncio
    async def test_negotiated_intervals(self):
        client, _, _ = await self._open("5000,10000", "4000,6000")
        assert client.intervals == HeartbeatIntervals(outgoing=6000, incoming=10000)
        assert client.server_heartbeat == Heartbeat(4000, 6000)

    @pytest.mark.asyncio
    async def test_disabled_arms_nothing(self):
        _, _, loop = await self._open("0,0", "4000,6000")
        assert loop.pending == []

    @pytest.mark.asyncio
    async def test_idle_client_sends_heartbeats(self):
        _, transport, loop = await self._open("1000,0", "0,1000")
        loop.advance(3.0)
        assert transport.heartbeats == 3

    @pytest.mark.asyncio
    async def test_frames_count_as_heartbeats(self):
        client, transport, loop = await self._open("1000,0", "0,1000")
        client.subscribe("/queue/a")
        for _ in range(5):
            loop.advance(0.9)
            client.send("/queue/a", body="x")
        assert transport.heartbeats == 0

    @pytest.mark.asyncio
    async def test_incoming_timeout_disconnects_once(self):
        client, transport, loop = await self._open("0,1000", "1000,0")
        disconnected, messages = MagicMock(), MagicMock()
        client.on_disconnected(disconnected)
        client.on_message(messages)

        loop.advance(1.999)
        assert client.is_connected
        loop.advance(0.001)

        disconnected.assert_called_once_with()
        assert client.is_connected is False
        assert transport.closed
        assert loop.pending == []

        transport.receive(b"MESSAGE\n\nlate\x00")
        messages.assert_not_called()
        loop.advance(60)
        disconnected.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_broker_heartbeats_keep_alive(self):
        client, transport, loop = await self._open("0,1000", "1000,0")
        for _ in range(10):
            loop.advance(1.5)
            transport.receive(b"\n")
        assert client.is_connected

    @pytest.mark.asyncio
    async def test_disconnect_cancels_timers(self):
        client, transport, loop = await self._open("1000,1000", "1000,1000")
        assert len(loop.pending) == 2
        await client.disconnect()
        assert loop.pending == []
        loop.advance(60)
        assert transport.heartbeats == 0

    @pytest.mark.asyncio
    async def test_heartbeat_on_closed_transport_is_noop(self):
        client, transport, loop = await self._open("1000,0", "0,1000")
        transport.closed = True
        loop.advance(5.0)
        assert transport.heartbeats == 0

    @pytest.mark.asyncio
    async def test_real_loop_timeout(self):
        transport = FakeTransport()
        client = StompClient(
            "broker", heartbeat="0,20", transport=transport, heartbeat_margin=0
        )
        done = asyncio.Event()
        client.on_disconnected(done.set)
        await client.connect(wait=False)
        transport.receive(connected_frame("20,0"))

        await asyncio.wait_for(done.wait(), timeout=2.0)
        assert client.state is ConnectionState.DISCONNECTED
