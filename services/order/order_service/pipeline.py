"""
Order Service — 信頼性パイプラインの組み立て

    OutboxStore ──(定期リレー)──▶ EventChannel ──▶ WorkerPool
                                                   ├─▶ EffectConsumer (在庫引き当て)
                                                   └─▶ OrderConfirmationPublisher (Redis)

start() でワーカーとリレーのタスクを起動し、stop() で止める。
"""

import asyncio
import logging

import redis.asyncio as aioredis

from .config import Settings
from .consumer import EffectConsumer
from .dedup import InMemoryProcessedKeys, ProcessedKeySet, RedisProcessedKeys
from .dispatch import EventChannel, WorkerPool
from .events import ORDER_CREATED
from .inventory import InventoryEffect
from .metrics import Metrics
from .notifications import OrderConfirmationPublisher
from .outbox import OutboxRelay, run_periodically
from .repository import UnitOfWorkFactory
from .resilience import CircuitBreaker, RetryPolicy

logger = logging.getLogger(__name__)


def build_processed_keys(settings: Settings, redis: aioredis.Redis | None) -> ProcessedKeySet:
    if settings.dedup_backend == "redis":
        if redis is None:
            raise ValueError("DEDUP_BACKEND=redis requires a Redis connection")
        return RedisProcessedKeys(redis, ttl_seconds=settings.dedup_ttl_seconds)
    if settings.dedup_backend != "memory":
        raise ValueError(f"Unknown DEDUP_BACKEND: {settings.dedup_backend}")
    return InMemoryProcessedKeys(
        max_keys=settings.dedup_max_keys,
        ttl_seconds=settings.dedup_ttl_seconds,
    )


class OrderPipeline:
    def __init__(
        self,
        settings: Settings,
        uow_factory: UnitOfWorkFactory,
        inventory: InventoryEffect,
        metrics: Metrics,
        redis: aioredis.Redis | None = None,
        processed: ProcessedKeySet | None = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics
        self.pool = WorkerPool(
            core_workers=settings.worker_core,
            max_workers=settings.worker_max,
            queue_capacity=settings.worker_queue_capacity,
            submit_timeout=settings.worker_submit_timeout,
        )
        self.channel = EventChannel(self.pool)
        self.breaker = CircuitBreaker(
            "inventory", failure_threshold=settings.breaker_failure_threshold
        )
        metrics.circuit_open.set_function(lambda: 1 if self.breaker.is_open else 0)

        self.consumer = EffectConsumer(
            inventory=inventory,
            processed=processed if processed is not None else build_processed_keys(settings, redis),
            breaker=self.breaker,
            retry=RetryPolicy(
                max_attempts=settings.effect_max_attempts,
                delay=settings.effect_retry_delay,
            ),
            metrics=metrics,
        )
        self.channel.subscribe(ORDER_CREATED, self.consumer.on_event)
        if redis is not None:
            self.channel.subscribe(ORDER_CREATED, OrderConfirmationPublisher(redis).on_event)

        self.relay = OutboxRelay(uow_factory, self.channel, batch_size=settings.outbox_batch_size)
        self._shutdown = asyncio.Event()
        self._relay_task: asyncio.Task | None = None

    def start(self, run_relay: bool = True) -> None:
        self.pool.start()
        if run_relay:
            self._shutdown.clear()
            self._relay_task = asyncio.create_task(
                run_periodically(self.relay, self.settings.outbox_poll_interval, self._shutdown),
                name="outbox-relay",
            )

    async def stop(self) -> None:
        self._shutdown.set()
        if self._relay_task is not None:
            await self._relay_task
            self._relay_task = None
        await self.pool.stop()
