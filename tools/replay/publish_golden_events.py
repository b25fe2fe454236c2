"""Replay golden envelopes onto a posts topic.

    python tools/replay/publish_golden_events.py --redis-url redis://localhost:6379/0
    python tools/replay/publish_golden_events.py --redis-url ... --dry-run

Files are published as written (a v1 file stays v1 on the wire) so consumers
exercise their upgraders. Files that do not decode are skipped unless
--strict is given.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from eventfabric.contracts.streams import POSTS_EVENTS
from eventfabric.core.broker import RedisStreamBroker
from eventfabric.core.codec import decode
from eventfabric.core.errors import DecodeError, PublishError

DEFAULT_EVENTS_DIR = Path("contracts") / "golden_events" / "v2"


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--redis-url", required=True)
    parser.add_argument("--topic", default=POSTS_EVENTS)
    parser.add_argument("--events-dir", type=Path, default=DEFAULT_EVENTS_DIR)
    parser.add_argument("--dry-run", action="store_true", help="decode and report without publishing")
    parser.add_argument("--strict", action="store_true", help="stop at the first file that does not decode")
    args = parser.parse_args()

    paths = sorted(args.events_dir.glob("*.json"))
    if not paths:
        raise SystemExit(f"{args.events_dir}: no *.json envelopes")

    broker = RedisStreamBroker(args.redis_url)
    if not args.dry_run:
        broker.connect()

    published = skipped = 0
    for path in paths:
        data = path.read_bytes()
        try:
            envelope = decode(data)
        except DecodeError as e:
            if args.strict:
                raise SystemExit(f"{path.name}: {e}") from e
            skipped += 1
            print(f"skip {path.name}: {e}")
            continue

        if args.dry_run:
            print(f"would publish {envelope.event_type} key={envelope.ordering_key} from {path.name}")
            continue
        try:
            ack = broker.publish_bytes(args.topic, data.strip(), ordering_key=envelope.ordering_key)
        except PublishError as e:
            raise SystemExit(f"{path.name}: publish {e.reason}: {e}") from e
        published += 1
        print(f"{ack.stream} {ack.message_id} <- {path.name}")

    print(f"published={published} skipped={skipped}")
    if not args.dry_run:
        broker.close()


if __name__ == "__main__":
    main()
