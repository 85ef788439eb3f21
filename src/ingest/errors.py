"""
Error taxonomy for the ingestion pipeline.

Every failure a caller can see is an IngestionError carrying the HTTP status
it maps to, so the API layer needs a single exception handler:

- EventValidationError (422) / PayloadTooLargeError (413): bad input, no store call
- CapacityError (503): concurrency gate saturated, caller should back off
- StoreTransientError: retried inside ObjectStoreClient, never reaches the caller
- StoreTerminalError (502, or 503 when retries ran out)
- UploadTimeoutError (504): request deadline elapsed mid-upload
"""
from typing import Optional


class IngestionError(Exception):
    """Base class for errors reported back to the caller."""
    status_code = 500
    error_type = "ingestion_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"type": self.error_type, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class EventValidationError(IngestionError):
    """Malformed or missing fields in an inbound event."""
    status_code = 422
    error_type = "validation_error"


class PayloadTooLargeError(EventValidationError):
    """Decoded payload exceeds the configured maximum size."""
    status_code = 413
    error_type = "payload_too_large"


class CapacityError(IngestionError):
    """No upload slot available (gate saturated and queue full or timed out)."""
    status_code = 503
    error_type = "capacity_exceeded"
    retry_after_seconds = 1


class StoreError(IngestionError):
    """Base class for object store failures."""
    status_code = 502
    error_type = "store_error"


class StoreTransientError(StoreError):
    """A failure expected to clear on retry (timeouts, resets, 5xx)."""
    error_type = "store_transient_error"


class StoreTerminalError(StoreError):
    """
    A failure retrying cannot fix.

    reason is "rejected" when the store refused the request outright and
    "retries_exhausted" when transient failures outlasted the attempt ceiling.
    """
    error_type = "store_terminal_error"

    def __init__(
        self,
        message: str,
        reason: str = "rejected",
        attempts: int = 1,
        details: Optional[dict] = None
    ):
        details = dict(details or {})
        details.setdefault("reason", reason)
        details.setdefault("attempts", attempts)
        super().__init__(message, details)
        self.reason = reason
        self.attempts = attempts
        if reason == "retries_exhausted":
            self.status_code = 503


class UploadTimeoutError(IngestionError):
    """The request deadline elapsed before the upload finished."""
    status_code = 504
    error_type = "upload_timeout"


class ConfigError(Exception):
    """Invalid configuration at startup. Fatal to the process."""
