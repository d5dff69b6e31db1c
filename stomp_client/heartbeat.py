# =============================================================================
# STOMP Client -- Heart-beating
# =============================================================================
#
# Negotiation (STOMP 1.2 section "Heart-beating"), client offers (cx, cy),
# server answers (sx, sy):
#   outgoing = 0 if cx == 0 or sy == 0 else max(cx, sy)
#   incoming = 0 if sx == 0 or cy == 0 else max(sx, cy)
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable

from ._logging import logger
from .constants import HEARTBEAT_TIMEOUT_MARGIN
from .types import Heartbeat, HeartbeatIntervals


def negotiate(client: Heartbeat | str, server: Heartbeat | str | None) -> HeartbeatIntervals:
    """Compute the effective heart-beat intervals for this client."""
    client = Heartbeat.parse(client)
    server = Heartbeat.parse(server)

    if client.send == 0 or server.receive == 0:
        outgoing = 0
    else:
        outgoing = max(client.send, server.receive)

    if server.send == 0 or client.receive == 0:
        incoming = 0
    else:
        incoming = max(server.send, client.receive)

    return HeartbeatIntervals(outgoing=outgoing, incoming=incoming)


class HeartbeatMonitor:
    """Two rearming one-shot timers driving liveness in both directions.

    The outgoing timer calls ``send_beat`` after ``outgoing`` ms of write
    silence; the incoming timer calls ``on_timeout`` after ``incoming`` ms
    plus ``margin_ms`` of read silence. A zero interval leaves its timer
    unarmed. At most one handle per direction is live at any time.

    Args:
        send_beat: Writes a heartbeat EOL to the transport.
        on_timeout: Declares the connection dead.
        margin_ms: Slack added to the incoming interval.
        loop: Event loop used as the timer service; defaults to the running loop.
    """

    def __init__(
        self,
        send_beat: Callable[[], Any],
        on_timeout: Callable[[], Any],
        *,
        margin_ms: int = HEARTBEAT_TIMEOUT_MARGIN,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._send_beat = send_beat
        self._on_timeout = on_timeout
        self._margin_ms = margin_ms
        self._loop = loop
        self._intervals = HeartbeatIntervals()
        self._running = False

        self._outgoing_handle: asyncio.TimerHandle | None = None
        self._incoming_handle: asyncio.TimerHandle | None = None

    @property
    def intervals(self) -> HeartbeatIntervals:
        return self._intervals

    @property
    def running(self) -> bool:
        return self._running

    def start(self, intervals: HeartbeatIntervals) -> None:
        """Adopt negotiated intervals and arm both timers."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._intervals = intervals
        self._running = True
        logger.debug(
            "Heartbeat intervals: outgoing=%dms incoming=%dms (+%dms margin)",
            intervals.outgoing,
            intervals.incoming,
            self._margin_ms,
        )
        self.reset_outgoing()
        self.reset_incoming()

    def stop(self) -> None:
        """Cancel both timers; later resets are ignored."""
        self._running = False
        if self._outgoing_handle is not None:
            self._outgoing_handle.cancel()
            self._outgoing_handle = None
        if self._incoming_handle is not None:
            self._incoming_handle.cancel()
            self._incoming_handle = None

    def reset_outgoing(self) -> None:
        """Rearm the outgoing timer; call after every write."""
        if self._outgoing_handle is not None:
            self._outgoing_handle.cancel()
            self._outgoing_handle = None
        if not self._running or self._intervals.outgoing <= 0:
            return
        assert self._loop is not None
        self._outgoing_handle = self._loop.call_later(
            self._intervals.outgoing / 1000, self._fire_outgoing
        )

    def reset_incoming(self) -> None:
        """Rearm the incoming timer; call on every read."""
        if self._incoming_handle is not None:
            self._incoming_handle.cancel()
            self._incoming_handle = None
        if not self._running or self._intervals.incoming <= 0:
            return
        assert self._loop is not None
        self._incoming_handle = self._loop.call_later(
            (self._intervals.incoming + self._margin_ms) / 1000, self._fire_incoming
        )

    def _fire_outgoing(self) -> None:
        self._outgoing_handle = None
        if not self._running:
            return
        self._send_beat()
        self.reset_outgoing()

    def _fire_incoming(self) -> None:
        self._incoming_handle = None
        if not self._running:
            return
        logger.debug("No broker activity for %dms", self._intervals.incoming)
        self.stop()
        self._on_timeout()
