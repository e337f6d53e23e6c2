"""
Order Service — ドメインモデル

Order: 注文本体。idempotency_key は一意、version は楽観的ロック用。
OutboxEvent: 注文と同じトランザクションで書き込む「未送信の通知」。
"""

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


class Order(BaseModel):
    order_id: str
    item_name: str
    quantity: int = Field(ge=0)
    idempotency_key: str
    version: int = 0


class OutboxEvent(BaseModel):
    """
    送信待ちイベント

    processed は False → True の一方向にしか遷移しない。
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    aggregate_id: str
    event_type: str
    payload: str
    processed: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrderPage(BaseModel):
    items: list[Order]
    page: int
    size: int
    total: int
