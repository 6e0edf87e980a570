"""
Sweep scheduler — makes timer-driven transitions happen.

Two paths, one version-checked `fire`:
1. Push timers: after a commit that sets a due time, an asyncio task sleeps
   until it and fires (best effort, lost on restart)
2. Sweep: every SWEEP_INTERVAL seconds (or on POST /internal/sweep) all
   unresolved sessions past their persisted due time are fired

Sweeps are single-flight: an in-process lock plus a Redis lease
'monitoring:sweep:lock', so an overlapping sweep on any worker returns 0.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from models.base import utcnow
from services.monitoring.config import REDIS_SWEEP_LOCK
from services.monitoring.processor import SessionProcessor
from services.monitoring.store import AuditStore

logger = logging.getLogger("carewatch.scheduler")


class SweepScheduler:
    """Background task: fires due session timers and redelivers lost dispatches."""

    def __init__(
        self,
        redis: Redis | None,
        session_factory: async_sessionmaker[AsyncSession],
        processor: SessionProcessor,
        store: AuditStore,
        clock: Callable[[], datetime] = utcnow,
        interval: int | None = None,
        lock_ttl: int | None = None,
        concurrency: int | None = None,
        push_timers: bool = True,
    ):
        self.redis = redis
        self.session_factory = session_factory
        self.processor = processor
        self.store = store
        self.clock = clock
        self.interval = interval if interval is not None else settings.SWEEP_INTERVAL
        self.lock_ttl = lock_ttl if lock_ttl is not None else settings.SWEEP_LOCK_TTL
        self.concurrency = max(1, concurrency if concurrency is not None else settings.SWEEP_CONCURRENCY)
        self.push_timers = push_timers
        self._running = False
        self._sweep_lock = asyncio.Lock()
        self._timers: dict[int, asyncio.Task] = {}

    async def start(self) -> None:
        self._running = True
        logger.info(
            "SweepScheduler started (sweep every %ds, lease %ds, push timers %s)",
            self.interval, self.lock_ttl, "on" if self.push_timers else "off",
        )

        while self._running:
            try:
                await self.sweep()
            except Exception as exc:
                logger.error("SweepScheduler cycle error: %s", exc, exc_info=True)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        logger.info("SweepScheduler stopped")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None) -> int:
        """Fire every due session against the version it was read at.

        Returns the number of transitions applied; 0 if another sweep holds
        the lease.
        """
        if self._sweep_lock.locked():
            logger.info("Sweep already running in this process, skipped")
            return 0

        async with self._sweep_lock:
            token = await self._acquire_lease()
            if token is None:
                logger.info("Sweep lease held by another worker, skipped")
                return 0
            try:
                return await self._sweep(now or self.clock())
            finally:
                await self._release_lease(token)

    async def _sweep(self, now: datetime) -> int:
        async with self.session_factory() as db:
            due = await self.store.list_due_sessions(db, now)

        applied = 0
        if due:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def fire_one(session_id: int, version: int) -> bool:
                async with semaphore:
                    try:
                        return await self.processor.fire(session_id, version, now)
                    except Exception as exc:
                        logger.error(
                            "Fire failed for session %d v%d: %s",
                            session_id, version, exc, exc_info=True,
                        )
                        return False

            results = await asyncio.gather(*(fire_one(sid, ver) for sid, ver in due))
            applied = sum(1 for ok in results if ok)

        # edges fired above are already being dispatched
        redelivered = await self.processor.redeliver_pending(before=now)
        if due or redelivered:
            logger.info(
                "Sweep @ %s: due=%d applied=%d redelivered=%d",
                now.isoformat(), len(due), applied, redelivered,
            )
        return applied

    async def _acquire_lease(self) -> str | None:
        token = uuid.uuid4().hex
        if self.redis is None:
            return token
        try:
            acquired = await self.redis.set(REDIS_SWEEP_LOCK, token, nx=True, ex=self.lock_ttl)
        except Exception as exc:
            # Redis down: sweep unguarded, fire is version-checked
            logger.warning("Sweep lease unavailable (%s), sweeping without it", exc)
            return token
        return token if acquired else None

    async def _release_lease(self, token: str) -> None:
        if self.redis is None:
            return
        try:
            current = await self.redis.get(REDIS_SWEEP_LOCK)
            if isinstance(current, bytes):
                current = current.decode()
            if current == token:
                await self.redis.delete(REDIS_SWEEP_LOCK)
        except Exception as exc:
            logger.warning("Sweep lease release failed: %s", exc)

    # ------------------------------------------------------------------
    # Push timers
    # ------------------------------------------------------------------

    def schedule_fire(self, session_id: int, version: int, due_at: datetime) -> None:
        """Fire the session at `due_at`. Replaces any timer for the session."""
        if not self.push_timers:
            return
        previous = self._timers.pop(session_id, None)
        # A timer that is itself firing schedules the next edge; leave it running.
        if previous is not None and not previous.done() and previous is not asyncio.current_task():
            previous.cancel()
        task = asyncio.create_task(
            self._fire_later(session_id, version, due_at),
            name=f"timer:{session_id}:v{version}",
        )
        self._timers[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))

    def _forget(self, session_id: int, task: asyncio.Task) -> None:
        if self._timers.get(session_id) is task:
            del self._timers[session_id]

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    async def _fire_later(self, session_id: int, version: int, due_at: datetime) -> None:
        delay = (due_at - self.clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self.processor.fire(session_id, version, max(self.clock(), due_at))
        except Exception as exc:
            logger.error(
                "Timer for session %d v%d failed: %s", session_id, version, exc, exc_info=True,
            )
