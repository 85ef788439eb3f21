"""
Concurrency gate and process-wide counters.

The gate bounds how many uploads hold a store connection at once. When it is
saturated a request either waits in a bounded queue (policy "queue", with a
maximum wait) or is turned away immediately (policy "reject"). Both paths end
in CapacityError rather than an unbounded pile-up of waiting requests.
"""
import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager

from . import metrics
from .errors import CapacityError

logger = logging.getLogger(__name__)

POLICY_QUEUE = "queue"
POLICY_REJECT = "reject"


class Supervisor:
    """Owns the upload slots and the accepted/succeeded/failed counters."""

    def __init__(
        self,
        max_concurrent: int = 32,
        policy: str = POLICY_QUEUE,
        max_queued: int = 256,
        queue_timeout: float = 2.0
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if policy not in (POLICY_QUEUE, POLICY_REJECT):
            raise ValueError(f"Unknown overload policy: {policy!r}")

        self.max_concurrent = max_concurrent
        self.policy = policy
        self.max_queued = max_queued
        self.queue_timeout = queue_timeout

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = threading.Lock()
        self._started_at = time.monotonic()

        self.accepted = 0
        self.succeeded = 0
        self.failed = 0
        self.rejected = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self.queued = 0
        self._upload_seconds_total = 0.0
        self._failures_by_type = {}

    @property
    def available_slots(self) -> int:
        with self._lock:
            return self.max_concurrent - self.in_flight

    def _reject(self, reason: str) -> CapacityError:
        with self._lock:
            self.rejected += 1
        logger.warning(
            "Upload rejected: %s", reason,
            extra={"in_flight": self.in_flight, "queued": self.queued, "policy": self.policy}
        )
        return CapacityError(
            f"Upload capacity exceeded: {reason}",
            {"max_concurrent": self.max_concurrent, "policy": self.policy}
        )

    async def _acquire(self) -> None:
        # A free slot is taken without suspending, under either policy
        if not self._semaphore.locked():
            await self._semaphore.acquire()
            return

        if self.policy == POLICY_REJECT:
            raise self._reject("all upload slots busy")

        with self._lock:
            queue_full = self.queued >= self.max_queued
            if not queue_full:
                self.queued += 1
                metrics.uploads_queued.inc()
        if queue_full:
            raise self._reject("upload queue full")

        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            raise self._reject(f"no slot freed within {self.queue_timeout}s")
        finally:
            with self._lock:
                self.queued -= 1
            metrics.uploads_queued.dec()

    @asynccontextmanager
    async def slot(self):
        """
        Hold one upload slot for the duration of the block.

        The slot is released on every exit path, including exceptions and
        task cancellation.

        Raises:
            CapacityError: If no slot can be obtained under the configured policy
        """
        await self._acquire()
        with self._lock:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        metrics.uploads_in_flight.inc()
        try:
            yield
        finally:
            with self._lock:
                self.in_flight -= 1
            metrics.uploads_in_flight.dec()
            self._semaphore.release()

    def record_accepted(self, size_bytes: int) -> None:
        with self._lock:
            self.accepted += 1
        metrics.payload_size_bytes.observe(size_bytes)

    def record_success(self, duration_seconds: float) -> None:
        with self._lock:
            self.succeeded += 1
            self._upload_seconds_total += duration_seconds
        metrics.upload_duration_seconds.observe(duration_seconds)

    def record_failure(self, error_type: str) -> None:
        with self._lock:
            self.failed += 1
            self._failures_by_type[error_type] = self._failures_by_type.get(error_type, 0) + 1

    def snapshot(self) -> dict:
        """Point-in-time view of the counters, for /v1/stats."""
        with self._lock:
            uptime = time.monotonic() - self._started_at
            avg_upload_ms = (
                self._upload_seconds_total / self.succeeded * 1000 if self.succeeded else None
            )
            return {
                "accepted": self.accepted,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "rejected": self.rejected,
                "failures_by_type": dict(self._failures_by_type),
                "in_flight": self.in_flight,
                "peak_in_flight": self.peak_in_flight,
                "queued": self.queued,
                "max_concurrent": self.max_concurrent,
                "available_slots": self.max_concurrent - self.in_flight,
                "policy": self.policy,
                "uptime_seconds": round(uptime, 1),
                "uploads_per_second": round(self.succeeded / uptime, 2) if uptime > 0 else 0.0,
                "avg_upload_ms": round(avg_upload_ms, 2) if avg_upload_ms is not None else None,
            }
