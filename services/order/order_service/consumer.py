"""
Order Service — 在庫引き当てコンシューマ

ORDER_CREATED を購読し、在庫サービスに引き当てを依頼する。

    1. 重複チェック: 処理済みキー集合に order_id を登録。既にあれば何もしない
    2. ブレーカーが開いていれば下流を呼ばずに終了 (このイベントの効果は落ちる)
    3. RetryPolicy で在庫引き当てを呼ぶ
    4. リトライを使い切ったら失敗カウンタとブレーカーの連続失敗数を加算
       成功したら連続失敗数を 0 に戻す

ワーカープール上で並行に実行される。例外は呼び出し元に出さない。
"""

import asyncio
import logging

from .dedup import ProcessedKeySet
from .errors import CircuitOpenError, TransientEffectFailure
from .events import OrderCreated
from .inventory import InventoryEffect
from .metrics import Metrics
from .resilience import CircuitBreaker, RetryPolicy

logger = logging.getLogger(__name__)


class EffectConsumer:
    def __init__(
        self,
        inventory: InventoryEffect,
        processed: ProcessedKeySet,
        breaker: CircuitBreaker,
        retry: RetryPolicy,
        metrics: Metrics,
    ) -> None:
        self.inventory = inventory
        self.processed = processed
        self.breaker = breaker
        self.retry = retry
        self.metrics = metrics

    async def on_event(self, event: OrderCreated) -> None:
        order_id = event.order_id
        logger.info("Processing orderId=%s", order_id)

        if not await self.processed.add(order_id):
            logger.warning("Duplicate event detected for orderId=%s", order_id)
            return

        try:
            await self.breaker.check()
        except CircuitOpenError:
            self.metrics.effects_skipped.inc()
            logger.warning("Circuit is OPEN. Skipping inventory call for orderId=%s", order_id)
            return

        try:
            await self.retry.run(self.inventory.reserve_stock, order_id)
        except TransientEffectFailure as e:
            self.metrics.inventory_failures.inc()
            failures = await self.breaker.record_failure()
            logger.error(
                "Inventory failure for orderId=%s after %s attempts: %s. failureCount=%s",
                order_id, self.retry.max_attempts, e, failures,
            )
            return

        await self.breaker.record_success()
        logger.info(
            "Inventory reserved successfully for orderId=%s on task=%s",
            order_id, asyncio.current_task().get_name(),
        )
