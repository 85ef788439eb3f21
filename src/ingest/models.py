import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TelemetryEvent(BaseModel):
    """One device snapshot. Immutable once validated."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    device_id: str = Field(..., alias="deviceId", min_length=1)
    timestamp_millis: int = Field(..., alias="timestampMillis", description="Source clock, not server time")
    x: Optional[float] = None
    y: Optional[float] = None
    speed: Optional[float] = Field(default=None, description="Non-negative by convention, not enforced")
    payload: bytes = Field(..., min_length=1, description="Binary snapshot, base64 on the wire")

    @field_validator("timestamp_millis", "x", "y", "speed", mode="before")
    @classmethod
    def reject_booleans(cls, value):
        # bool is an int subclass; lax mode would turn true into 1
        if isinstance(value, bool):
            raise ValueError("must be a number, not a boolean")
        return value

    @field_validator("payload", mode="before")
    @classmethod
    def decode_payload(cls, value):
        """Decode base64 text (optionally a data: URL); raw bytes pass through."""
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if not isinstance(value, str):
            raise ValueError("payload must be a base64-encoded string")
        # Canvas snapshots arrive as "data:image/png;base64,...."
        if value.startswith("data:") and "," in value:
            value = value.split(",", 1)[1]
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("payload is not valid base64")

    def object_metadata(self) -> dict:
        """User metadata stored alongside the object (S3 requires string values)."""
        metadata = {
            "device-id": self.device_id,
            "timestamp-millis": str(self.timestamp_millis),
        }
        for name in ("x", "y", "speed"):
            value = getattr(self, name)
            if value is not None:
                metadata[name] = repr(value)
        return metadata


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_TERMINAL = "failed_terminal"


@dataclass
class UploadAttempt:
    """
    Tracks one event's write to the store.

    Owned by the IngestionHandler call that created it. ObjectStoreClient.put
    bumps attempt_number and sets outcome as it goes; the key never changes,
    which is what makes retries idempotent.
    """
    key: str
    payload: bytes
    attempt_number: int = 0
    outcome: AttemptOutcome = AttemptOutcome.PENDING

    @property
    def finished(self) -> bool:
        return self.outcome in (AttemptOutcome.SUCCEEDED, AttemptOutcome.FAILED_TERMINAL)


@dataclass(frozen=True)
class ObjectReceipt:
    """What the store reported for a successful write."""
    key: str
    bucket: str
    url: str
    etag: Optional[str] = None
    version_id: Optional[str] = None
    attempts: int = 1


class UploadReceipt(BaseModel):
    """Response body for an accepted and stored event."""
    key: str
    bucket: str
    url: str
    etag: Optional[str] = None
    device_id: str
    timestamp_millis: int
    size_bytes: int
    attempts: int
    duration_ms: float
