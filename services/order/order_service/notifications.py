"""
Order Service — 注文確認の通知

ORDER_CREATED の 2 つ目の購読者。Redis Pub/Sub の order_events チャネルに
注文作成を流し、他サービス (マーケティング等) に知らせる。

注意: Redis Pub/Sub は fire-and-forget。購読者がいなければ消える。
リレーが再送した場合は同じ通知が 2 回出ることがある。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .events import OrderCreated

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class OrderConfirmationPublisher:
    def __init__(self, redis: aioredis.Redis, channel: str = ORDER_EVENTS_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def on_event(self, event: OrderCreated) -> None:
        message = json.dumps({
            "event_type": "OrderCreated",
            "data": {
                "order_id": event.order_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }, default=str)
        try:
            await self.redis.publish(self.channel, message)
        except RedisError:
            logger.exception("Failed to publish order confirmation for orderId=%s", event.order_id)
            return
        logger.info("Order confirmation sent for orderId=%s", event.order_id)
