"""
Telemetry Snapshot Uploader API
FastAPI application that accepts device telemetry snapshots and stores each
one as an object in an S3-compatible bucket under a unique key.
"""
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from src.ingest import metrics
from src.ingest.config import Settings, load_settings
from src.ingest.errors import (
    CapacityError,
    EventValidationError,
    IngestionError,
    PayloadTooLargeError,
    StoreError,
)
from src.ingest.events import EventPublisher
from src.ingest.handler import IngestionHandler
from src.ingest.keys import KeyGenerator
from src.ingest.logging_config import configure_logging
from src.ingest.redis_client import get_redis_client
from src.ingest.store import ObjectStoreClient
from src.ingest.supervisor import Supervisor

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
# Room for a "data:image/png;base64," prefix and line breaks around the payload
FORM_PART_SLACK_BYTES = 4096


def build_handler(settings: Settings) -> IngestionHandler:
    """Wire store client, concurrency gate and optional event stream from settings."""
    store = ObjectStoreClient(
        settings.store,
        backoff=settings.backoff,
        max_pool_connections=settings.max_concurrent_uploads,
    )
    supervisor = Supervisor(
        max_concurrent=settings.max_concurrent_uploads,
        policy=settings.overload_policy,
        max_queued=settings.max_queued_uploads,
        queue_timeout=settings.queue_timeout_seconds,
    )
    publisher = None
    if settings.publish_events:
        publisher = EventPublisher(get_redis_client(settings.redis_host, settings.redis_port))

    return IngestionHandler(
        store=store,
        supervisor=supervisor,
        key_generator=KeyGenerator(settings.key_prefix),
        max_payload_bytes=settings.max_payload_bytes,
        request_timeout=settings.request_timeout_seconds or None,
        publisher=publisher,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Handlers injected by create_app() skip environment loading.
    # ConfigError here aborts startup.
    if getattr(app.state, "handler", None) is None:
        settings = load_settings()
        configure_logging(settings.log_level, settings.log_format)
        app.state.handler = build_handler(settings)
        logger.info(
            "Uploader started",
            extra={
                "bucket": settings.store.bucket,
                "max_concurrent_uploads": settings.max_concurrent_uploads,
                "overload_policy": settings.overload_policy,
                "max_upload_attempts": settings.backoff.max_attempts,
            }
        )
    yield


def get_handler(request: Request) -> IngestionHandler:
    return request.app.state.handler


def max_form_part_size(max_payload_bytes: int) -> int:
    """Largest text part that can still hold a base64 payload of max_payload_bytes."""
    return -(-max_payload_bytes * 4 // 3) + FORM_PART_SLACK_BYTES


async def read_event_body(request: Request, max_payload_bytes: int) -> dict:
    """
    Decode the request body into a raw event mapping.

    JSON bodies carry the payload base64-encoded. Form bodies carry the same
    field names; in multipart requests the payload may be a file part, whose
    bytes are passed through without base64 decoding.
    """
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

    if content_type in FORM_CONTENT_TYPES:
        try:
            form = await request.form(max_part_size=max_form_part_size(max_payload_bytes))
        except (MultiPartException, StarletteHTTPException) as exc:
            message = getattr(exc, "message", None) or getattr(exc, "detail", None) or str(exc)
            if "maximum size" in message:
                raise PayloadTooLargeError(
                    f"Payload exceeds maximum size of {max_payload_bytes} bytes",
                    {"max_bytes": max_payload_bytes}
                )
            raise EventValidationError(f"Malformed form body: {message}")
        raw = {}
        for name, value in form.items():
            if isinstance(value, UploadFile):
                raw[name] = await value.read()
            else:
                raw[name] = value
        return raw

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise EventValidationError("Request body is not valid JSON")
    if not isinstance(body, dict):
        raise EventValidationError("Event body must be a JSON object")
    return body


async def ingestion_error_handler(request: Request, exc: IngestionError) -> JSONResponse:
    headers = None
    if isinstance(exc, CapacityError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(handler: Optional[IngestionHandler] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        handler: Pre-built IngestionHandler (tests); when omitted, one is
            built from environment settings at startup

    Returns:
        FastAPI app
    """
    app = FastAPI(
        title="Telemetry Snapshot Uploader",
        description="Stores device telemetry snapshots in an S3-compatible object store",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.handler = handler
    app.add_exception_handler(IngestionError, ingestion_error_handler)

    @app.get("/metrics")
    def get_metrics():
        """
        Prometheus metrics endpoint.

        Returns:
            Response: Prometheus-formatted metrics
        """
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health(handler: IngestionHandler = Depends(get_handler)):
        """
        Health check endpoint.

        Returns:
            dict: API status, bucket reachability and event stream status
        """
        try:
            await handler.store.check()
            store_status = "connected"
        except StoreError as exc:
            logger.warning("Store health check failed: %s", exc.message)
            store_status = "unreachable"

        if handler.publisher is None:
            events_status = "disabled"
        else:
            events_status = "connected" if await handler.publisher.ping() else "disconnected"

        return {
            "status": "healthy" if store_status == "connected" else "degraded",
            "store": store_status,
            "events": events_status,
        }

    @app.get("/v1/stats")
    def stats(handler: IngestionHandler = Depends(get_handler)):
        """Counters and gate occupancy for watching throughput under load."""
        return handler.supervisor.snapshot()

    @app.post("/v1/telemetry", status_code=201)
    async def create_telemetry(request: Request, handler: IngestionHandler = Depends(get_handler)):
        """
        Store one telemetry snapshot.

        Process:
        1. Decode JSON or form body
        2. Validate fields and decode payload (422/413 on failure, nothing stored)
        3. Assign a unique storage key
        4. Upload under the concurrency gate, retrying transient store errors

        Returns:
            dict: Receipt with key, URL, ETag and attempt count

        Raises:
            IngestionError: Rendered as {"error": {...}} with 4xx/5xx status
        """
        start_time = time.time()
        try:
            raw_event = await read_event_body(request, handler.max_payload_bytes)
            receipt = await handler.handle(raw_event)
        except IngestionError as exc:
            metrics.telemetry_requests_total.labels(status=exc.error_type).inc()
            raise
        finally:
            metrics.request_duration_seconds.labels(endpoint="create_telemetry").observe(time.time() - start_time)

        metrics.telemetry_requests_total.labels(status="success").inc()
        return receipt.model_dump()

    return app


app = create_app()
