"""
Unit tests for Pydantic models and upload records.
"""
import base64

import pytest
from pydantic import ValidationError

from src.ingest.models import AttemptOutcome, TelemetryEvent, UploadAttempt


def encoded(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.mark.unit
class TestTelemetryEventModel:
    """Test suite for TelemetryEvent model."""

    def test_event_valid_data(self, raw_event, snapshot_bytes):
        event = TelemetryEvent.model_validate(raw_event)

        assert event.device_id == "drone-1"
        assert event.timestamp_millis == 1700000000000
        assert event.x == -9795500.0
        assert event.y == 5121000.0
        assert event.speed == 42.5
        assert event.payload == snapshot_bytes

    def test_event_accepts_field_names(self):
        """Snake-case names work as well as the wire aliases."""
        event = TelemetryEvent(device_id="drone-2", timestamp_millis=1, payload=encoded(b"abc"))
        assert event.device_id == "drone-2"
        assert event.payload == b"abc"

    def test_position_and_speed_optional(self):
        event = TelemetryEvent.model_validate(
            {"deviceId": "drone-1", "timestampMillis": 5, "payload": encoded(b"x")}
        )
        assert event.x is None
        assert event.y is None
        assert event.speed is None

    def test_negative_speed_not_enforced(self):
        event = TelemetryEvent.model_validate(
            {"deviceId": "d", "timestampMillis": 5, "speed": -3.0, "payload": encoded(b"x")}
        )
        assert event.speed == -3.0

    def test_timestamp_from_string(self):
        """Form bodies deliver numbers as strings."""
        event = TelemetryEvent.model_validate(
            {"deviceId": "d", "timestampMillis": "1700000000000", "payload": encoded(b"x")}
        )
        assert event.timestamp_millis == 1700000000000

    @pytest.mark.parametrize("field", ["timestampMillis", "x", "y", "speed"])
    @pytest.mark.parametrize("flag", [True, False])
    def test_boolean_numbers_rejected(self, field, flag):
        raw = {"deviceId": "d", "timestampMillis": 1, "payload": encoded(b"abc"), field: flag}

        with pytest.raises(ValidationError) as exc_info:
            TelemetryEvent.model_validate(raw)

        assert exc_info.value.errors()[0]["loc"] == (field,)

    def test_missing_device_id(self):
        with pytest.raises(ValidationError) as exc_info:
            TelemetryEvent.model_validate({"timestampMillis": 1, "payload": encoded(b"x")})

        errors = exc_info.value.errors()
        assert any(error["loc"] == ("deviceId",) for error in errors)

    def test_empty_device_id(self):
        with pytest.raises(ValidationError):
            TelemetryEvent.model_validate({"deviceId": "", "timestampMillis": 1, "payload": encoded(b"x")})

    def test_missing_timestamp(self):
        with pytest.raises(ValidationError) as exc_info:
            TelemetryEvent.model_validate({"deviceId": "d", "payload": encoded(b"x")})

        errors = exc_info.value.errors()
        assert any(error["loc"] == ("timestampMillis",) for error in errors)

    def test_non_integer_timestamp(self):
        with pytest.raises(ValidationError):
            TelemetryEvent.model_validate({"deviceId": "d", "timestampMillis": "yesterday", "payload": encoded(b"x")})

    def test_missing_payload(self):
        with pytest.raises(ValidationError) as exc_info:
            TelemetryEvent.model_validate({"deviceId": "d", "timestampMillis": 1})

        errors = exc_info.value.errors()
        assert any(error["loc"] == ("payload",) for error in errors)

    def test_invalid_base64_payload(self):
        with pytest.raises(ValidationError) as exc_info:
            TelemetryEvent.model_validate({"deviceId": "d", "timestampMillis": 1, "payload": "not base64!!"})

        assert "base64" in str(exc_info.value)

    def test_empty_payload(self):
        with pytest.raises(ValidationError):
            TelemetryEvent.model_validate({"deviceId": "d", "timestampMillis": 1, "payload": ""})

    def test_non_string_payload(self):
        with pytest.raises(ValidationError):
            TelemetryEvent.model_validate({"deviceId": "d", "timestampMillis": 1, "payload": 12345})

    def test_data_url_payload(self):
        """Canvas exports arrive as data URLs."""
        event = TelemetryEvent.model_validate(
            {"deviceId": "d", "timestampMillis": 1, "payload": "data:image/png;base64," + encoded(b"\x89PNG")}
        )
        assert event.payload == b"\x89PNG"

    def test_raw_bytes_payload_passes_through(self):
        event = TelemetryEvent.model_validate({"deviceId": "d", "timestampMillis": 1, "payload": b"\x00\x01"})
        assert event.payload == b"\x00\x01"

    def test_event_is_immutable(self, raw_event):
        event = TelemetryEvent.model_validate(raw_event)
        with pytest.raises(ValidationError):
            event.device_id = "drone-9"

    def test_object_metadata(self, raw_event):
        metadata = TelemetryEvent.model_validate(raw_event).object_metadata()

        assert metadata == {
            "device-id": "drone-1",
            "timestamp-millis": "1700000000000",
            "x": "-9795500.0",
            "y": "5121000.0",
            "speed": "42.5",
        }
        assert all(isinstance(value, str) for value in metadata.values())

    def test_object_metadata_skips_missing_position(self):
        event = TelemetryEvent.model_validate({"deviceId": "d", "timestampMillis": 1, "payload": encoded(b"x")})
        assert set(event.object_metadata()) == {"device-id", "timestamp-millis"}


@pytest.mark.unit
class TestUploadAttempt:
    """Test suite for UploadAttempt record."""

    def test_defaults(self):
        attempt = UploadAttempt(key="telemetry/abc", payload=b"x")
        assert attempt.attempt_number == 0
        assert attempt.outcome == AttemptOutcome.PENDING
        assert attempt.finished is False

    def test_finished_states(self):
        attempt = UploadAttempt(key="k", payload=b"x")

        attempt.outcome = AttemptOutcome.FAILED_TRANSIENT
        assert attempt.finished is False

        attempt.outcome = AttemptOutcome.SUCCEEDED
        assert attempt.finished is True

        attempt.outcome = AttemptOutcome.FAILED_TERMINAL
        assert attempt.finished is True
