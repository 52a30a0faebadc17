from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Dict, Optional, Protocol

from tokenwarden.logging import get_logger, sanitize_error_message
from tokenwarden.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditStore(Protocol):
    def insert_audit_event(self, event: AuditEvent) -> None: ...


class AuditCache(Protocol):
    async def put_audit_event(
        self, event_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None: ...


class AuditLogger:
    """Append-only audit emitter writing to the durable store and the cache.

    Once started, events go through a bounded queue drained by one worker
    task so a slow sink never stalls validation. Before start (scripts, unit
    tests) or when the queue is full, events are written inline. Write
    failures are logged and counted but never raised to the caller.
    """

    def __init__(
        self,
        store: AuditStore,
        cache: Optional[AuditCache],
        *,
        cache_ttl_seconds: int = 90 * 24 * 60 * 60,
        queue_size: int = 1000,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self.queue_size = queue_size
        self.durable_failures = 0
        self.cache_failures = 0
        self.last_error: Optional[str] = None
        self._queue: Optional[asyncio.Queue[AuditEvent]] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def degraded(self) -> bool:
        return self.durable_failures > 0

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._drain(), name="audit-writer")
        logger.info("audit_worker_started", queue_size=self.queue_size)

    async def stop(self) -> None:
        if not self.running:
            return
        await self.flush()
        worker = self._worker
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._worker = None
        self._queue = None
        logger.info("audit_worker_stopped")

    async def flush(self) -> None:
        """Wait until every queued event has been written (or failed)."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def emit(self, event: AuditEvent) -> None:
        if self.running and self._queue is not None:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                logger.warning(
                    "audit_queue_full", event_type=event.event_type.value, event_id=event.id
                )
        await self._write(event)

    async def _drain(self) -> None:
        queue = self._queue
        if queue is None:
            return
        while True:
            event = await queue.get()
            try:
                await self._write(event, offload=True)
            finally:
                queue.task_done()

    async def _write(self, event: AuditEvent, *, offload: bool = False) -> None:
        try:
            if offload:
                # Durable stores block; keep them off the event loop
                await asyncio.to_thread(self.store.insert_audit_event, event)
            else:
                self.store.insert_audit_event(event)
        except Exception as exc:
            self.durable_failures += 1
            self.last_error = sanitize_error_message(str(exc))
            logger.error(
                "audit_write_failed",
                sink="durable",
                event_id=event.id,
                event_type=event.event_type.value,
                error_type=type(exc).__name__,
                error=self.last_error,
            )
        if self.cache is None:
            return
        try:
            await self.cache.put_audit_event(event.id, event.to_dict(), self.cache_ttl_seconds)
        except Exception as exc:
            self.cache_failures += 1
            logger.warning(
                "audit_write_failed",
                sink="cache",
                event_id=event.id,
                event_type=event.event_type.value,
                error_type=type(exc).__name__,
            )
