"""Publish messages to a STOMP destination from a blocking script.

    python examples/publisher.py --destination /queue/orders --count 10
"""

import argparse
import json
import time

from stomp_client import SyncStompClient


def main(args: argparse.Namespace) -> None:
    client = SyncStompClient(args.host, args.port, heartbeat="5000,0")
    client.connect()
    try:
        for i in range(args.count):
            body = json.dumps({"seq": i, "ts": time.time()})
            client.send(args.destination, {"content-type": "application/json"}, body)
            print(f"sent #{i} -> {args.destination}")
            time.sleep(args.interval)
        print(client.get_stats())
    finally:
        client.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="STOMP publisher")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=61613)
    parser.add_argument("--destination", default="/queue/test")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--interval", type=float, default=0.5)
    main(parser.parse_args())
