"""
Prometheus metrics for monitoring ingestion throughput, latency and backpressure.
"""
from prometheus_client import Counter, Histogram, Gauge

# Request metrics
telemetry_requests_total = Counter(
    'telemetry_requests_total',
    'Total number of telemetry upload requests by result',
    ['status']
)

request_duration_seconds = Histogram(
    'request_duration_seconds',
    'Request latency in seconds',
    ['endpoint']
)

# Store metrics
upload_attempts_total = Counter(
    'upload_attempts_total',
    'Individual PutObject attempts by outcome',
    ['outcome']
)

upload_duration_seconds = Histogram(
    'upload_duration_seconds',
    'Time from slot acquisition to stored object, including retries',
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

payload_size_bytes = Histogram(
    'payload_size_bytes',
    'Decoded payload size of accepted events',
    buckets=(1024, 4096, 16384, 65536, 262144, 1048576, 4194304, 10485760)
)

# Concurrency gate metrics
uploads_in_flight = Gauge(
    'uploads_in_flight',
    'Uploads currently holding a concurrency slot'
)

uploads_queued = Gauge(
    'uploads_queued',
    'Requests waiting for a concurrency slot'
)

# Redis stream metrics
event_publish_total = Counter(
    'event_publish_total',
    'Object-stored events published to the Redis stream',
    ['status']
)
