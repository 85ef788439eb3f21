"""
Ingestion path: validate -> assign key -> upload under the concurrency gate.

Failures are raised as IngestionError subclasses; the API layer turns them
into structured error responses. Every event that passes validation ends in
exactly one of: a receipt, a raised error, or a capacity rejection, and the
Supervisor counts it accordingly.
"""
import asyncio
import logging
import time
from typing import Mapping, Optional

from pydantic import ValidationError

from .config import DEFAULT_MAX_PAYLOAD_BYTES
from .errors import (
    CapacityError,
    EventValidationError,
    IngestionError,
    PayloadTooLargeError,
    UploadTimeoutError,
)
from .events import EventPublisher
from .keys import KeyGenerator
from .models import ObjectReceipt, TelemetryEvent, UploadAttempt, UploadReceipt
from .store import ObjectStoreClient
from .supervisor import Supervisor

logger = logging.getLogger(__name__)


def _summarize_errors(exc: ValidationError) -> list:
    """Flatten pydantic errors into JSON-safe {field, message} pairs."""
    return [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


class IngestionHandler:
    """Turns one raw inbound event into one stored object."""

    def __init__(
        self,
        store: ObjectStoreClient,
        supervisor: Supervisor,
        key_generator: Optional[KeyGenerator] = None,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        request_timeout: Optional[float] = 30.0,
        publisher: Optional[EventPublisher] = None
    ):
        self.store = store
        self.supervisor = supervisor
        self.key_generator = key_generator or KeyGenerator()
        self.max_payload_bytes = max_payload_bytes
        self.request_timeout = request_timeout
        self.publisher = publisher

    def _too_large(self, size: int) -> PayloadTooLargeError:
        return PayloadTooLargeError(
            f"Payload exceeds maximum size of {self.max_payload_bytes} bytes",
            {"max_bytes": self.max_payload_bytes, "size_bytes": size}
        )

    def validate(self, raw_event: Mapping) -> TelemetryEvent:
        """
        Check required fields and decode the payload.

        Raises:
            EventValidationError: Missing/ill-typed fields, bad base64, empty payload
            PayloadTooLargeError: Decoded payload above max_payload_bytes
        """
        if not isinstance(raw_event, Mapping):
            raise EventValidationError("Event body must be an object")

        # Reject obviously oversized base64 before paying to decode it
        raw_payload = raw_event.get("payload")
        if isinstance(raw_payload, str) and len(raw_payload) * 3 // 4 > self.max_payload_bytes + 3:
            raise self._too_large(len(raw_payload) * 3 // 4)

        try:
            event = TelemetryEvent.model_validate(raw_event)
        except ValidationError as exc:
            raise EventValidationError("Invalid telemetry event", {"errors": _summarize_errors(exc)})

        if len(event.payload) > self.max_payload_bytes:
            raise self._too_large(len(event.payload))
        return event

    async def _dispatch(self, event: TelemetryEvent, attempt: UploadAttempt) -> ObjectReceipt:
        async with self.supervisor.slot():
            started = time.perf_counter()
            receipt = await self.store.put(
                attempt.key, attempt.payload, metadata=event.object_metadata(), attempt=attempt
            )
            self.supervisor.record_success(time.perf_counter() - started)
            return receipt

    async def handle(self, raw_event: Mapping) -> UploadReceipt:
        """
        Validate, key, and persist one telemetry event.

        Args:
            raw_event: Decoded request body (JSON object or form fields)

        Returns:
            UploadReceipt for the stored object

        Raises:
            EventValidationError: Before any key is generated or store call made
            CapacityError: Concurrency gate saturated
            StoreTerminalError: Store rejected the write or retries ran out
            UploadTimeoutError: request_timeout elapsed; the upload was cancelled
        """
        started = time.perf_counter()
        event = self.validate(raw_event)

        # Fixed for every retry of this event
        key = self.key_generator.next()
        attempt = UploadAttempt(key=key, payload=event.payload)
        self.supervisor.record_accepted(len(event.payload))

        try:
            object_receipt = await asyncio.wait_for(
                self._dispatch(event, attempt), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            self.supervisor.record_failure(UploadTimeoutError.error_type)
            logger.error(
                "Upload timed out after %ss", self.request_timeout,
                extra={"key": key, "device_id": event.device_id, "attempts": attempt.attempt_number}
            )
            raise UploadTimeoutError(
                f"Upload did not complete within {self.request_timeout}s",
                {"key": key, "attempts": attempt.attempt_number}
            )
        except CapacityError:
            raise
        except IngestionError as exc:
            self.supervisor.record_failure(exc.error_type)
            raise
        except asyncio.CancelledError:
            self.supervisor.record_failure("cancelled")
            logger.info("Upload cancelled", extra={"key": key, "attempts": attempt.attempt_number})
            raise
        except Exception:
            self.supervisor.record_failure("internal_error")
            logger.exception("Unexpected error uploading %s", key)
            raise

        receipt = UploadReceipt(
            key=object_receipt.key,
            bucket=object_receipt.bucket,
            url=object_receipt.url,
            etag=object_receipt.etag,
            device_id=event.device_id,
            timestamp_millis=event.timestamp_millis,
            size_bytes=len(event.payload),
            attempts=object_receipt.attempts,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.debug(
            "Stored telemetry snapshot",
            extra={"key": receipt.key, "device_id": receipt.device_id, "attempts": receipt.attempts}
        )

        if self.publisher is not None:
            await self.publisher.publish(event, receipt)

        return receipt
