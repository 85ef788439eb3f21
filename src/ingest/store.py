"""
S3-compatible object store client with retry/backoff.

One boto3 client is shared by all requests (boto3 clients are thread-safe);
each PutObject runs in the default executor so the event loop keeps serving
requests while a write is on the wire. botocore's own retries are switched
off so the attempt ceiling and backoff schedule live here, where cancellation
can stop them.
"""
import asyncio
import functools
import logging
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    HTTPClientError,
    ReadTimeoutError,
)

from . import metrics
from .config import StoreConfig
from .errors import StoreError, StoreTerminalError, StoreTransientError
from .models import AttemptOutcome, ObjectReceipt, UploadAttempt
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)

# Error codes S3 (and MinIO/Ceph) use for momentary overload
TRANSIENT_ERROR_CODES = frozenset({
    "SlowDown",
    "RequestTimeout",
    "InternalError",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "RequestTimeTooSkewed",
})

TRANSIENT_NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
    HTTPClientError,
)


def build_s3_client(config: StoreConfig, max_pool_connections: int = 32):
    """
    Create the boto3 S3 client for the configured store.

    Custom endpoints (MinIO, LocalStack, Ceph) get path-style addressing since
    they rarely serve virtual-hosted bucket names.
    """
    boto_config = Config(
        region_name=config.region,
        retries={"total_max_attempts": 1, "mode": "standard"},
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
        max_pool_connections=max_pool_connections,
        s3={"addressing_style": "path"} if config.endpoint_url else None,
    )
    client = boto3.client(
        "s3",
        endpoint_url=config.endpoint_url,
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        config=boto_config,
    )
    logger.info(
        "Created S3 client",
        extra={"endpoint": config.endpoint_url or "aws", "region": config.region, "bucket": config.bucket}
    )
    return client


def classify_error(exc: Exception) -> StoreError:
    """
    Map a boto3/botocore exception to StoreTransientError or StoreTerminalError.

    Transient: connection/timeouts, 5xx responses, throttling codes.
    Terminal: auth failures, missing bucket, malformed requests, missing
    credentials, anything else botocore raises.
    """
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        details = {"code": code, "http_status": status}
        if code in TRANSIENT_ERROR_CODES or (status is not None and status >= 500):
            return StoreTransientError(f"Store responded {code}", details)
        return StoreTerminalError(f"Store rejected request: {code}", reason="rejected", details=details)

    if isinstance(exc, TRANSIENT_NETWORK_ERRORS):
        return StoreTransientError(f"Network error talking to store: {exc}", {"code": type(exc).__name__})

    if isinstance(exc, BotoCoreError):
        return StoreTerminalError(f"Store client error: {exc}", reason="rejected", details={"code": type(exc).__name__})

    raise TypeError(f"Not a store error: {exc!r}")


class ObjectStoreClient:
    """Whole-object writes to one bucket, retried on transient failure."""

    def __init__(
        self,
        config: StoreConfig,
        backoff: Optional[BackoffPolicy] = None,
        client=None,
        max_pool_connections: int = 32
    ):
        self.config = config
        self.backoff = backoff or BackoffPolicy()
        self._client = client if client is not None else build_s3_client(config, max_pool_connections)

    @property
    def bucket(self) -> str:
        return self.config.bucket

    def object_url(self, key: str) -> str:
        """URL of the object (path-style on custom endpoints, virtual-hosted on AWS)."""
        quoted = quote(key, safe="/")
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.bucket}/{quoted}"
        return f"https://{self.bucket}.s3.{self.config.region}.amazonaws.com/{quoted}"

    def _put_object(self, key: str, payload: bytes, metadata: Optional[dict]) -> dict:
        kwargs = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": payload,
            "ContentType": "application/octet-stream",
        }
        if metadata:
            kwargs["Metadata"] = metadata
        try:
            return self._client.put_object(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise classify_error(exc) from exc

    async def put(
        self,
        key: str,
        payload: bytes,
        metadata: Optional[dict] = None,
        attempt: Optional[UploadAttempt] = None
    ) -> ObjectReceipt:
        """
        Write payload to key, retrying transient failures with backoff.

        Every attempt sends the same key and bytes, so a retry after an
        ambiguous failure (e.g. timeout after the store accepted the write)
        just overwrites the object with identical content.

        Args:
            key: Storage key assigned to the event
            payload: Object body
            metadata: Optional S3 user metadata (string values)
            attempt: UploadAttempt to update; a fresh one is used if omitted

        Returns:
            ObjectReceipt for the stored object

        Raises:
            StoreTerminalError: On a non-retryable failure, or once
                max_attempts transient failures have occurred
            asyncio.CancelledError: If the caller is cancelled; no further
                attempts are made
        """
        if attempt is None:
            attempt = UploadAttempt(key=key, payload=payload)
        loop = asyncio.get_running_loop()

        while True:
            attempt.attempt_number += 1
            attempt.outcome = AttemptOutcome.PENDING
            try:
                response = await loop.run_in_executor(
                    None, functools.partial(self._put_object, key, payload, metadata)
                )
            except StoreTransientError as exc:
                attempt.outcome = AttemptOutcome.FAILED_TRANSIENT
                metrics.upload_attempts_total.labels(outcome="transient_failure").inc()

                if attempt.attempt_number >= self.backoff.max_attempts:
                    attempt.outcome = AttemptOutcome.FAILED_TERMINAL
                    logger.error(
                        "Upload failed after %d attempts: %s", attempt.attempt_number, exc.message,
                        extra={"key": key, "bucket": self.bucket}
                    )
                    raise StoreTerminalError(
                        f"Store unavailable after {attempt.attempt_number} attempts: {exc.message}",
                        reason="retries_exhausted",
                        attempts=attempt.attempt_number,
                        details=exc.details,
                    ) from exc

                delay = self.backoff.delay(attempt.attempt_number)
                logger.warning(
                    "Attempt %d/%d failed: %s. Retrying in %.2fs",
                    attempt.attempt_number, self.backoff.max_attempts, exc.message, delay,
                    extra={"key": key}
                )
                await asyncio.sleep(delay)
                continue
            except StoreTerminalError as exc:
                attempt.outcome = AttemptOutcome.FAILED_TERMINAL
                exc.attempts = attempt.attempt_number
                exc.details["attempts"] = attempt.attempt_number
                metrics.upload_attempts_total.labels(outcome="terminal_failure").inc()
                logger.error("Upload rejected by store: %s", exc.message, extra={"key": key, "bucket": self.bucket})
                raise

            attempt.outcome = AttemptOutcome.SUCCEEDED
            metrics.upload_attempts_total.labels(outcome="success").inc()
            etag = response.get("ETag")
            return ObjectReceipt(
                key=key,
                bucket=self.bucket,
                url=self.object_url(key),
                etag=etag.strip('"') if etag else None,
                version_id=response.get("VersionId"),
                attempts=attempt.attempt_number,
            )

    def _head_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            raise classify_error(exc) from exc

    async def check(self) -> None:
        """
        Verify the bucket is reachable with the configured credentials.

        Raises:
            StoreError: If HeadBucket fails
        """
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._head_bucket)
