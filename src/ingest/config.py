"""
Process-wide configuration, loaded once from the environment at startup.

Values come from environment variables; a .env file in the working directory
is loaded first so local runs against MinIO/LocalStack need no exports.
Anything invalid raises ConfigError, which is the one failure allowed to take
the process down.
"""
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .keys import DEFAULT_KEY_PREFIX
from .redis_client import DEFAULT_REDIS_HOST, DEFAULT_REDIS_PORT
from .retry import BackoffPolicy

# Load environment variables from .env file
load_dotenv()

OVERLOAD_POLICIES = ("queue", "reject")
LOG_FORMATS = ("json", "text")

DEFAULT_MAX_PAYLOAD_BYTES = 10 * 1024 * 1024  # 10 MiB


@dataclass(frozen=True)
class StoreConfig:
    """Connection details for the S3-compatible store. Read-only after load."""
    bucket: str
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None  # unset = AWS; set for MinIO/LocalStack
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = field(default=None, repr=False)
    connect_timeout: float = 5.0
    read_timeout: float = 30.0


@dataclass(frozen=True)
class Settings:
    store: StoreConfig
    key_prefix: str = DEFAULT_KEY_PREFIX
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES

    # Concurrency gate
    max_concurrent_uploads: int = 32
    overload_policy: str = "queue"
    max_queued_uploads: int = 256
    queue_timeout_seconds: float = 2.0

    # Retries
    backoff: BackoffPolicy = BackoffPolicy()
    request_timeout_seconds: float = 30.0

    # Redis event stream
    publish_events: bool = False
    redis_host: str = DEFAULT_REDIS_HOST
    redis_port: int = DEFAULT_REDIS_PORT

    log_level: str = "INFO"
    log_format: str = "json"


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must be non-negative, got {value}")
    return value


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _get_choice(env: Mapping[str, str], name: str, default: str, choices: tuple) -> str:
    value = (env.get(name) or default).strip().lower()
    if value not in choices:
        raise ConfigError(f"{name} must be one of {choices}, got {value!r}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Returns:
        Settings

    Raises:
        ConfigError: If a required value is missing or any value is malformed
    """
    if env is None:
        env = os.environ

    bucket = (env.get("S3_BUCKET") or "").strip()
    if not bucket:
        raise ConfigError("S3_BUCKET is required")

    access_key = env.get("AWS_ACCESS_KEY_ID") or None
    secret_key = env.get("AWS_SECRET_ACCESS_KEY") or None
    if bool(access_key) != bool(secret_key):
        raise ConfigError("AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY must be set together")

    store = StoreConfig(
        bucket=bucket,
        region=env.get("S3_REGION") or "us-east-1",
        endpoint_url=env.get("S3_ENDPOINT_URL") or None,
        access_key_id=access_key,
        secret_access_key=secret_key,
        connect_timeout=_get_float(env, "S3_CONNECT_TIMEOUT_SECONDS", 5.0),
        read_timeout=_get_float(env, "S3_READ_TIMEOUT_SECONDS", 30.0),
    )

    backoff = BackoffPolicy(
        max_attempts=_get_int(env, "MAX_UPLOAD_ATTEMPTS", 5, minimum=1),
        initial_delay=_get_float(env, "BACKOFF_INITIAL_SECONDS", 0.1),
        max_delay=_get_float(env, "BACKOFF_MAX_SECONDS", 5.0),
    )

    return Settings(
        store=store,
        key_prefix=env.get("S3_KEY_PREFIX", DEFAULT_KEY_PREFIX),
        max_payload_bytes=_get_int(env, "MAX_PAYLOAD_BYTES", DEFAULT_MAX_PAYLOAD_BYTES, minimum=1),
        max_concurrent_uploads=_get_int(env, "MAX_CONCURRENT_UPLOADS", 32, minimum=1),
        overload_policy=_get_choice(env, "OVERLOAD_POLICY", "queue", OVERLOAD_POLICIES),
        max_queued_uploads=_get_int(env, "MAX_QUEUED_UPLOADS", 256),
        queue_timeout_seconds=_get_float(env, "QUEUE_TIMEOUT_SECONDS", 2.0),
        backoff=backoff,
        request_timeout_seconds=_get_float(env, "REQUEST_TIMEOUT_SECONDS", 30.0),
        publish_events=_get_bool(env, "PUBLISH_EVENTS", False),
        redis_host=env.get("REDIS_HOST") or DEFAULT_REDIS_HOST,
        redis_port=_get_int(env, "REDIS_PORT", DEFAULT_REDIS_PORT, minimum=1),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        log_format=_get_choice(env, "LOG_FORMAT", "json", LOG_FORMATS),
    )
