"""
Order Service — プロセス内イベントチャネルとワーカープール

リレーは EventChannel.publish でイベントを流し、購読者 (EffectConsumer など)
のハンドラはワーカープール上で非同期に実行される。

ワーカープール:
    core_workers 個のワーカーで開始し、キューが満杯なら max_workers まで増やす。
    それでも空かなければ submit_timeout 秒だけ待ち、WorkerPoolSaturated を投げる。
    黙って捨てることはしない (リレー側が未処理のまま残して次周期で再送する)。

イベント間の順序は保証しない。
"""

import asyncio
import functools
import logging
from collections import defaultdict
from typing import Awaitable, Callable

from pydantic import BaseModel

from .errors import WorkerPoolSaturated

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]
Handler = Callable[[BaseModel], Awaitable[None]]


class WorkerPool:
    def __init__(
        self,
        core_workers: int = 2,
        max_workers: int = 5,
        queue_capacity: int = 50,
        submit_timeout: float = 5.0,
        name: str = "order-async",
    ) -> None:
        if not 1 <= core_workers <= max_workers:
            raise ValueError("require 1 <= core_workers <= max_workers")
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        self.core_workers = core_workers
        self.max_workers = max_workers
        self.queue_capacity = queue_capacity
        self.submit_timeout = submit_timeout
        self.name = name
        self._queue: asyncio.Queue[Job] | None = None
        self._workers: list[asyncio.Task] = []

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        if self._queue is not None:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_capacity)
        for _ in range(self.core_workers):
            self._spawn()
        logger.info("Worker pool %s started with %s workers", self.name, self.core_workers)

    def _spawn(self) -> None:
        index = len(self._workers) + 1
        self._workers.append(
            asyncio.create_task(self._run_worker(), name=f"{self.name}-{index}")
        )

    async def _run_worker(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await job()
            except Exception:
                logger.exception("Job failed on %s", asyncio.current_task().get_name())
            finally:
                self._queue.task_done()

    async def submit(self, job: Job) -> None:
        """
        ジョブをキューに積む。

        キューが満杯ならワーカーを 1 つ増やし (max_workers まで)、
        submit_timeout 秒以内に空きができなければ WorkerPoolSaturated。
        """
        if self._queue is None:
            raise RuntimeError(f"Worker pool {self.name} is not started")
        if self._queue.full() and len(self._workers) < self.max_workers:
            self._spawn()
            logger.info("Worker pool %s grew to %s workers", self.name, len(self._workers))
        try:
            await asyncio.wait_for(self._queue.put(job), timeout=self.submit_timeout)
        except asyncio.TimeoutError:
            raise WorkerPoolSaturated(
                f"Worker pool {self.name} queue full ({self.queue_capacity}) "
                f"for {self.submit_timeout}s"
            ) from None

    async def join(self) -> None:
        """キューに積まれたジョブがすべて終わるまで待つ。"""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if self._queue is None:
            return
        if drain:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._queue = None
        logger.info("Worker pool %s stopped", self.name)


class EventChannel:
    """event_type ごとのハンドラ登録と発行"""

    def __init__(self, pool: WorkerPool) -> None:
        self._pool = pool
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)
        logger.info("Subscribed %s to %s", getattr(handler, "__qualname__", handler), event_type)

    async def publish(self, event_type: str, event: BaseModel) -> None:
        """
        購読者ごとにジョブを 1 つ投入する。ハンドラの完了は待たない。
        プールが飽和していれば WorkerPoolSaturated がそのまま伝播する。
        """
        handlers = self._handlers.get(event_type)
        if not handlers:
            logger.warning("No subscriber for event type %s", event_type)
            return
        for handler in handlers:
            await self._pool.submit(functools.partial(handler, event))
