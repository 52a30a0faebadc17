import asyncio
import time
from unittest.mock import MagicMock

from tokenwarden.service.audit import AuditLogger
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.memory_cache import MemoryCache
from tokenwarden.storage.models import AuditEvent, AuditEventType


def _event(event_type=AuditEventType.TOKEN_VALIDATED, **kwargs) -> AuditEvent:
    return AuditEvent(event_type, True, token_id="tok_1", **kwargs)


class TestInlineWrites:
    """Before start() events are written synchronously to both sinks."""

    async def test_writes_to_store_and_cache(self):
        store, cache = MemoryStore(), MemoryCache()
        audit = AuditLogger(store, cache)
        event = _event()

        await audit.emit(event)

        assert [e.id for e in store.audit_events] == [event.id]
        cached = cache.get_audit_event(event.id)
        assert cached["event_type"] == "token_validated"
        assert cached["token_id"] == "tok_1"

    async def test_durable_failure_is_counted_not_raised(self):
        store = MagicMock()
        store.insert_audit_event.side_effect = RuntimeError("disk full")
        cache = MemoryCache()
        audit = AuditLogger(store, cache)
        event = _event()

        await audit.emit(event)

        assert audit.durable_failures == 1
        assert audit.degraded is True
        assert "disk full" in audit.last_error
        # the cache copy is still written
        assert cache.get_audit_event(event.id) is not None

    async def test_cache_failure_does_not_degrade(self):
        class BrokenCache:
            async def put_audit_event(self, event_id, payload, ttl_seconds):
                raise ConnectionError("redis down")

        store = MemoryStore()
        audit = AuditLogger(store, BrokenCache())

        await audit.emit(_event())

        assert audit.cache_failures == 1
        assert audit.degraded is False
        assert len(store.audit_events) == 1

    async def test_cache_is_optional(self):
        store = MemoryStore()
        await AuditLogger(store, None).emit(_event())
        assert len(store.audit_events) == 1


class TestBackgroundWorker:
    async def test_flush_drains_queue(self):
        store = MemoryStore()
        audit = AuditLogger(store, MemoryCache())
        await audit.start()
        try:
            for _ in range(5):
                await audit.emit(_event())
            await audit.flush()
            assert len(store.audit_events) == 5
        finally:
            await audit.stop()
        assert audit.running is False

    async def test_full_queue_falls_back_to_inline(self):
        store = MemoryStore()
        audit = AuditLogger(store, MemoryCache(), queue_size=1)
        await audit.start()
        try:
            queued, overflow = _event(), _event()
            await audit.emit(queued)
            await audit.emit(overflow)
            # the overflow event was written before the worker got to run
            assert [e.id for e in store.audit_events] == [overflow.id]
            await audit.flush()
            assert {e.id for e in store.audit_events} == {queued.id, overflow.id}
        finally:
            await audit.stop()

    async def test_start_is_idempotent(self):
        audit = AuditLogger(MemoryStore(), None)
        await audit.start()
        worker = audit._worker
        await audit.start()
        assert audit._worker is worker
        await audit.stop()
        await audit.stop()

    async def test_slow_store_does_not_block_event_loop(self):
        class SlowStore(MemoryStore):
            def insert_audit_event(self, event):
                time.sleep(0.3)
                super().insert_audit_event(event)

        store = SlowStore()
        audit = AuditLogger(store, None)
        await audit.start()
        try:
            await audit.emit(_event())
            await asyncio.sleep(0)  # let the worker pick the event up

            started = time.monotonic()
            await asyncio.sleep(0.01)
            assert time.monotonic() - started < 0.2

            await audit.flush()
            assert len(store.audit_events) == 1
        finally:
            await audit.stop()
