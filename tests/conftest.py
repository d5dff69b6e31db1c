"""Shared fixtures for the STOMP client tests."""

import pytest

from stomp_client.client import StompClient

from tests.fakes import CONNECTED_FRAME, FakeLoop, FakeTransport


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def fake_loop():
    return FakeLoop()


@pytest.fixture()
def client(transport):
    """Client wired to an in-memory transport."""
    return StompClient("broker", transport=transport)


@pytest.fixture()
def open_session(client, transport):
    """Drive ``client`` through CONNECT / CONNECTED."""

    async def _open(frame: bytes = CONNECTED_FRAME) -> StompClient:
        await client.connect(wait=False)
        transport.receive(frame)
        return client

    return _open
