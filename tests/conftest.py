"""
Shared test doubles: an in-memory S3 client that can fail on demand.
"""
import base64
import hashlib
import io
import threading
import time

import pytest
from botocore.exceptions import ClientError

from src.ingest.config import StoreConfig
from src.ingest.retry import BackoffPolicy
from src.ingest.store import ObjectStoreClient


def client_error(code: str, status: int, operation: str = "PutObject") -> ClientError:
    """Build a botocore ClientError the way boto3 raises it."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} (test)"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeS3Client:
    """
    Stands in for boto3's S3 client.

    failures: exceptions raised by successive put_object calls before they
        start succeeding (or forever, with always_fail)
    delay: seconds each put_object blocks, to hold slots open
    """

    def __init__(self, failures=None, always_fail=None, delay: float = 0.0):
        self.objects = {}
        self.put_calls = []
        self.failures = list(failures or [])
        self.always_fail = always_fail
        self.delay = delay
        self.active = 0
        self.peak_active = 0
        self.head_bucket_error = None
        self._lock = threading.Lock()

    def put_object(self, Bucket, Key, Body, ContentType=None, Metadata=None):
        with self._lock:
            self.put_calls.append(Key)
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                if self.always_fail is not None:
                    raise self.always_fail
                if self.failures:
                    raise self.failures.pop(0)
                self.objects[(Bucket, Key)] = {"Body": bytes(Body), "Metadata": dict(Metadata or {})}
            return {"ETag": f'"{hashlib.md5(Body).hexdigest()}"'}
        finally:
            with self._lock:
                self.active -= 1

    def get_object(self, Bucket, Key):
        stored = self.objects[(Bucket, Key)]
        return {"Body": io.BytesIO(stored["Body"]), "Metadata": stored["Metadata"]}

    def head_bucket(self, Bucket):
        if self.head_bucket_error is not None:
            raise self.head_bucket_error
        return {}


NO_WAIT_BACKOFF = BackoffPolicy(max_attempts=5, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def store_config():
    return StoreConfig(bucket="drone-snapshots", endpoint_url="http://localhost:9000")


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def store(store_config, fake_s3):
    return ObjectStoreClient(store_config, backoff=NO_WAIT_BACKOFF, client=fake_s3)


@pytest.fixture
def snapshot_bytes():
    """12KB blob standing in for a rendered map snapshot."""
    return bytes(range(256)) * 48


@pytest.fixture
def raw_event(snapshot_bytes):
    return {
        "deviceId": "drone-1",
        "timestampMillis": 1700000000000,
        "x": -9795500,
        "y": 5121000,
        "speed": 42.5,
        "payload": base64.b64encode(snapshot_bytes).decode("ascii"),
    }
