"""
Event Consumer - Tails the telemetry Redis Stream and prints stored objects.

Run this in a separate terminal while the uploader is taking traffic (with
PUBLISH_EVENTS=true) to watch snapshots land in the bucket.

Usage:
    python scripts/event_consumer.py            # only new events
    python scripts/event_consumer.py --from-start

Press Ctrl+C to stop.
"""
import argparse
import os
import sys
from datetime import datetime

import redis

# Add project root to path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.ingest.events import STREAM_NAME, read_events, get_stream_length
from src.ingest.redis_client import DEFAULT_REDIS_HOST, DEFAULT_REDIS_PORT, get_redis_client


def format_timestamp(iso_string: str) -> str:
    """Convert ISO timestamp to readable format."""
    try:
        dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
    except ValueError:
        return iso_string
    return dt.strftime("%H:%M:%S")


def format_event(event_data: dict) -> str:
    """Render one stream entry as a single line."""
    event_type = event_data.get("event_type", "unknown")
    timestamp = format_timestamp(event_data.get("stored_at", ""))

    if event_type == "object_stored":
        device = event_data.get("device_id", "?")
        key = event_data.get("key", "?")
        size = event_data.get("size_bytes", "?")
        position = f"({event_data.get('x', '?')}, {event_data.get('y', '?')})"
        return f"  [{timestamp}] STORED: device={device} key={key} bytes={size} pos={position}"

    return f"  [{timestamp}] {event_type}: {event_data}"


def main():
    """Main consumer loop."""
    parser = argparse.ArgumentParser(description="Tail the telemetry event stream")
    parser.add_argument("--from-start", action="store_true", help="Replay all retained events first")
    parser.add_argument("--host", default=os.getenv("REDIS_HOST", DEFAULT_REDIS_HOST))
    parser.add_argument("--port", type=int, default=os.getenv("REDIS_PORT", str(DEFAULT_REDIS_PORT)))
    args = parser.parse_args()

    print("=" * 60)
    print("TELEMETRY UPLOADER - Event Consumer")
    print("=" * 60)

    r = get_redis_client(args.host, args.port)
    try:
        r.ping()
    except redis.ConnectionError:
        print("ERROR: Could not connect to Redis.")
        print("Make sure Redis is running and REDIS_HOST/REDIS_PORT are set.")
        sys.exit(1)

    print(f"Stream '{STREAM_NAME}' has {get_stream_length(r)} events")
    print("Listening for new events... (press Ctrl+C to stop)")
    print("-" * 60)

    # "$" = only events published from now on, "0" = everything retained
    last_id = "0" if args.from_start else "$"

    try:
        while True:
            # Block for 1 second waiting for new events
            events_list = read_events(r, last_id=last_id, count=50, block_ms=1000)

            for event_id, event_data in events_list:
                print(format_event(event_data))
                last_id = event_id

    except KeyboardInterrupt:
        print()
        print("-" * 60)
        print("Consumer stopped.")
        print(f"Final stream length: {get_stream_length(r)} events")


if __name__ == "__main__":
    main()
