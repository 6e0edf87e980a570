"""Inactivity monitoring module.

Entry point: MonitoringModule. Creates and wires all sub-services:

    EventIngestor -> SessionProcessor -> SessionStateMachine -> AuditStore
                          |                    ^
                          v                    |
              NotificationDispatcher     SweepScheduler
"""
import asyncio
import logging

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from services.monitoring.dispatcher import NotificationDispatcher
from services.monitoring.gateway import Gateway, RetryingSender, build_gateway
from services.monitoring.ingestor import EventIngestor
from services.monitoring.processor import SessionProcessor
from services.monitoring.registry import DeviceRegistry
from services.monitoring.scheduler import SweepScheduler
from services.monitoring.state_machine import SessionStateMachine
from services.monitoring.store import AuditStore

logger = logging.getLogger("carewatch.monitoring")


class MonitoringModule:
    """Main orchestrator for ingest, timers and notifications."""

    def __init__(
        self,
        redis: Redis | None,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Gateway | None = None,
        background: bool = True,
        push_timers: bool | None = None,
        sweep_concurrency: int | None = None,
        sleep=asyncio.sleep,
    ):
        self.redis = redis
        self.session_factory = session_factory

        self.gateway = gateway or build_gateway()
        self.registry = DeviceRegistry(redis, session_factory)
        self.store = AuditStore(redis)
        self.machine = SessionStateMachine(self.store)
        self.sender = RetryingSender(
            self.gateway,
            max_attempts=settings.NOTIFY_MAX_ATTEMPTS,
            backoff_base=settings.NOTIFY_BACKOFF_BASE,
            backoff_max=settings.NOTIFY_BACKOFF_MAX,
            sleep=sleep,
        )
        self.dispatcher = NotificationDispatcher(
            session_factory,
            self.registry,
            self.store,
            self.sender,
            channel=settings.NOTIFY_CHANNEL,
            background=background,
            conflict_retries=settings.CONFLICT_RETRIES,
        )
        self.processor = SessionProcessor(
            session_factory,
            self.store,
            self.machine,
            self.registry,
            self.dispatcher,
            conflict_retries=settings.CONFLICT_RETRIES,
        )
        self.scheduler = SweepScheduler(
            redis,
            session_factory,
            self.processor,
            self.store,
            concurrency=sweep_concurrency,
            push_timers=settings.PUSH_TIMERS_ENABLED if push_timers is None else push_timers,
        )
        self.processor.timers = self.scheduler
        self.ingestor = EventIngestor(self.registry, self.processor)

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the periodic sweep loop."""
        if settings.SWEEP_LOOP_ENABLED:
            self._tasks = [
                asyncio.create_task(self.scheduler.start(), name="monitoring_sweep"),
            ]
        logger.info(
            "Monitoring module started: sweep loop %s, gateway %s",
            "on" if settings.SWEEP_LOOP_ENABLED else "off",
            type(self.gateway).__name__,
        )

    async def stop(self) -> None:
        """Stop timers and the sweep loop, then let in-flight dispatches finish."""
        logger.info("Monitoring module stopping...")
        await self.scheduler.stop()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.dispatcher.drain()
        await self.gateway.close()
        logger.info("Monitoring module stopped")
