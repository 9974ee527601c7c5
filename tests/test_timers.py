"""Tests for the in-process timer backend."""

import asyncio
from datetime import timedelta

from cafe_orders.core.clock import utcnow
from cafe_orders.core.exceptions import ConflictError, TransientStorageError
from cafe_orders.services.timers import LocalTimerBackend, TimerKey


def make_key(order_id: str = "o-1") -> TimerKey:
    return TimerKey(order_id, utcnow())


class TestTimerKey:

    def test_task_id_is_deterministic(self):
        key = make_key()

        assert key.task_id == TimerKey(key.order_id, key.requested_at).task_id
        assert key.task_id.startswith("cancellation-expiry:o-1:")


class TestLocalTimerBackend:

    async def test_fires_after_deadline(self, timer_backend):
        fired = asyncio.Event()
        calls = []

        async def callback(order_id, requested_at):
            calls.append(order_id)
            fired.set()
            return True

        timer_backend.schedule(make_key(), utcnow() + timedelta(seconds=0.1), callback)
        await asyncio.wait_for(fired.wait(), timeout=2)

        assert calls == ["o-1"]

    async def test_retries_transient_failures(self, timer_backend):
        attempts = []
        done = asyncio.Event()

        async def flaky(order_id, requested_at):
            attempts.append(order_id)
            if len(attempts) == 1:
                raise TransientStorageError("database down")
            if len(attempts) == 2:
                raise ConflictError("lost race")
            done.set()
            return True

        timer_backend.schedule(make_key(), utcnow(), flaky)
        await asyncio.wait_for(done.wait(), timeout=2)

        assert len(attempts) == 3

    async def test_cancelled_timer_never_fires(self, timer_backend):
        calls = []

        async def callback(order_id, requested_at):
            calls.append(order_id)
            return True

        key = make_key()
        timer_backend.schedule(key, utcnow() + timedelta(seconds=0.2), callback)
        assert timer_backend.is_scheduled(key)

        timer_backend.cancel(key)
        await asyncio.sleep(0.4)

        assert calls == []
        assert not timer_backend.is_scheduled(key)

    async def test_schedule_is_idempotent(self, timer_backend):
        calls = []

        async def callback(order_id, requested_at):
            calls.append(order_id)
            return True

        key = make_key()
        fire_at = utcnow() + timedelta(seconds=0.1)
        timer_backend.schedule(key, fire_at, callback)
        timer_backend.schedule(key, fire_at, callback)
        await asyncio.sleep(0.4)

        assert calls == ["o-1"]

    async def test_shutdown_drops_pending(self):
        backend = LocalTimerBackend()
        key = make_key()

        async def callback(order_id, requested_at):
            return True

        backend.schedule(key, utcnow() + timedelta(seconds=30), callback)
        await backend.shutdown()

        assert not backend.is_scheduled(key)
