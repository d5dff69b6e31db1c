"""Subscribe to a STOMP destination and print incoming messages.

    pip install stomp-client

    python examples/subscriber.py --host localhost --destination /queue/orders
    python examples/subscriber.py --ws ws://localhost:15674/ws --destination /topic/prices
"""

import argparse
import asyncio
import logging
import signal

from stomp_client import AckMode, StompClient, WebSocketTransport


async def main(args: argparse.Namespace) -> None:
    transport = WebSocketTransport(args.ws) if args.ws else None
    client = StompClient(
        args.host,
        args.port,
        heartbeat=args.heartbeat,
        login=args.login,
        passcode=args.passcode,
        transport=transport,
    )

    @client.on_error
    def on_error(frame):
        print(f"[ERROR] {frame.headers.get('message')}: {frame.text}")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(client.disconnect()))

    async with client:
        client.subscribe(args.destination, ack=AckMode.CLIENT_INDIVIDUAL)
        print(f"Connected to {args.host}:{args.port} (session {client.session})")
        print(f"Subscribed to {args.destination}, Ctrl+C to stop\n")

        # Iteration ends once the session is torn down.
        async for frame in client:
            print(f"[{frame.headers.get('destination')}] {frame.text}")
            if client.is_connected:
                client.ack(frame.headers["ack"])


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="STOMP subscriber")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=61613)
    parser.add_argument("--ws", help="WebSocket URL; overrides TCP")
    parser.add_argument("--destination", default="/queue/test")
    parser.add_argument("--heartbeat", default="5000,10000")
    parser.add_argument("--login")
    parser.add_argument("--passcode")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    asyncio.run(main(args))
