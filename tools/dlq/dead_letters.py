"""Inspect and replay dead-lettered envelopes.

    python tools/dlq/dead_letters.py --redis-url redis://localhost:6379/0 list
    python tools/dlq/dead_letters.py --redis-url ... replay <dlq-message-id>
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from eventfabric.contracts.streams import POSTS_EVENTS
from eventfabric.core.broker import RedisStreamBroker


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--redis-url", required=True)
    ap.add_argument("--topic", default=POSTS_EVENTS)
    ap.add_argument("--count", type=int, default=100)
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("list")
    replay = sub.add_parser("replay")
    replay.add_argument("message_ids", nargs="+")
    args = ap.parse_args()

    broker = RedisStreamBroker(args.redis_url)
    broker.connect()
    dead = broker.dead_letters(args.topic, count=args.count)

    if args.command == "list":
        for d in dead:
            print(f"{d.message_id}\t{d.failed_at.isoformat()}\tattempts={d.attempts}\t{d.error}")
        print(f"{len(dead)} dead letter(s) on {args.topic}")
        return

    by_id = {d.message_id: d for d in dead}
    for mid in args.message_ids:
        d = by_id.get(mid)
        if d is None:
            raise SystemExit(f"dead letter {mid} not found in the first {args.count} entries")
        broker.requeue_dead_letter(d)
        print(f"requeued {mid} -> {d.original_stream}")


if __name__ == "__main__":
    main()
