"""
Event publishing using Redis Streams.

Each stored snapshot is announced on a stream so that downstream consumers
(the live map, analytics, archival jobs) learn about new objects without
polling the bucket.

Stream name: "telemetry:events"
Event types: "object_stored"
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import redis
from redis.exceptions import RedisError

from . import metrics
from .models import TelemetryEvent, UploadReceipt

logger = logging.getLogger(__name__)

# Stream configuration
STREAM_NAME = "telemetry:events"
MAX_STREAM_LENGTH = 10000  # Keep last 10k events (prevents unbounded growth)


def publish_object_stored_event(
    redis_client: redis.Redis,
    event: TelemetryEvent,
    receipt: UploadReceipt
) -> str:
    """
    Publish an object_stored event to the Redis stream.

    Args:
        redis_client: Redis connection
        event: The telemetry event that was stored
        receipt: Receipt returned for the stored object

    Returns:
        Event ID assigned by Redis (e.g., "1234567890123-0")
    """
    event_data = {
        "event_type": "object_stored",
        "key": receipt.key,
        "bucket": receipt.bucket,
        "url": receipt.url,
        "device_id": event.device_id,
        "timestamp_millis": str(event.timestamp_millis),
        "size_bytes": str(receipt.size_bytes),
        "stored_at": datetime.now(timezone.utc).isoformat(),
    }
    for name in ("x", "y", "speed"):
        value = getattr(event, name)
        if value is not None:
            event_data[name] = str(value)

    # MAXLEN ~ 10000 keeps approximately 10k events (the ~ means "approximately" for performance)
    return redis_client.xadd(
        STREAM_NAME,
        event_data,
        maxlen=MAX_STREAM_LENGTH,
        approximate=True
    )


def read_events(
    redis_client: redis.Redis,
    last_id: str = "0",
    count: int = 100,
    block_ms: Optional[int] = None
) -> list:
    """
    Read events from the stream.

    Args:
        redis_client: Redis connection
        last_id: Read events after this ID ("0" for all, "$" for only new)
        count: Maximum number of events to return
        block_ms: If set, block for this many milliseconds waiting for new events

    Returns:
        List of (event_id, event_data) tuples
    """
    if block_ms is not None:
        result = redis_client.xread({STREAM_NAME: last_id}, count=count, block=block_ms)
    else:
        result = redis_client.xread({STREAM_NAME: last_id}, count=count)

    # xread returns: [(stream_name, [(id, data), (id, data), ...])]
    if not result:
        return []
    return result[0][1]


def get_stream_length(redis_client: redis.Redis) -> int:
    """Get the current number of events in the stream."""
    return redis_client.xlen(STREAM_NAME)


class EventPublisher:
    """
    Best-effort publisher used by the ingestion path.

    The object is already durable in the store when this runs, so a Redis
    failure is logged and counted but never fails the request.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    async def publish(self, event: TelemetryEvent, receipt: UploadReceipt) -> Optional[str]:
        loop = asyncio.get_running_loop()
        try:
            event_id = await loop.run_in_executor(
                None, publish_object_stored_event, self.redis_client, event, receipt
            )
        except RedisError as exc:
            metrics.event_publish_total.labels(status="error").inc()
            logger.warning("Failed to publish object_stored event: %s", exc, extra={"key": receipt.key})
            return None
        metrics.event_publish_total.labels(status="success").inc()
        return event_id

    async def ping(self) -> bool:
        """Check the Redis connection without blocking the event loop."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.redis_client.ping)
        except RedisError:
            return False
        return True
