"""
Order Service — コマンドハンドラ (Write 側)

注文作成はトランザクショナル・アウトボックスで行う:
  1. 冪等キーで既存の注文を探す (あればそれを返すだけ)
  2. 注文と OrderCreated のアウトボックス行を同じ UnitOfWork で書き込む
  3. commit — 両方確定するか、両方捨てられるか

在庫引き当てはここでは呼ばない。アウトボックスリレーが後で拾って
EffectConsumer に渡すので、在庫サービスが落ちていても注文は受け付けられる。
"""

import logging

from .errors import (
    DuplicateKeyRace,
    NotFoundError,
    OptimisticConflict,
    OrderAlreadyExists,
)
from .events import ORDER_CREATED, OrderCreated, encode_event
from .metrics import Metrics
from .models import Order, OutboxEvent
from .repository import UnitOfWorkFactory

logger = logging.getLogger(__name__)


async def create_order(
    uow_factory: UnitOfWorkFactory,
    order_id: str,
    item_name: str,
    quantity: int,
    idempotency_key: str,
    metrics: Metrics | None = None,
) -> Order:
    """
    注文作成コマンド (冪等)

    同じ idempotency_key で何度呼ばれても注文は 1 件、
    アウトボックスイベントも 1 件しか作られない。

    Raises:
        ValueError: idempotency_key が空、または quantity が負
        OrderAlreadyExists: order_id が別の冪等キーで使用済み
        SerializationFailure: イベントを直列化できない (注文もロールバック)
    """
    if not idempotency_key:
        raise ValueError("idempotency_key must not be empty")
    if quantity < 0:
        raise ValueError("quantity must be >= 0")

    async with uow_factory() as uow:
        existing = await uow.orders.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            logger.info(
                "Duplicate request detected. Returning existing order: orderId=%s, idempotencyKey=%s",
                existing.order_id, idempotency_key,
            )
            return existing

        logger.info(
            "Attempting to create order with: orderId=%s, itemName=%s, quantity=%s, idempotencyKey=%s",
            order_id, item_name, quantity, idempotency_key,
        )

        try:
            saved = await uow.orders.save(Order(
                order_id=order_id,
                item_name=item_name,
                quantity=quantity,
                idempotency_key=idempotency_key,
            ))

            # 直列化に失敗したら commit に到達しない → 注文の INSERT も捨てられる
            payload = encode_event(OrderCreated(order_id=saved.order_id))
            await uow.outbox.save(OutboxEvent(
                aggregate_id=saved.order_id,
                event_type=ORDER_CREATED,
                payload=payload,
            ))
            await uow.commit()
        except (DuplicateKeyRace, OrderAlreadyExists) as e:
            # PostgreSQL は主キーを先に検査するので、同一リクエストの並行再送でも
            # OrderAlreadyExists になりうる。どちらも冪等キーで読み直して判定する
            conflict = e
            saved = None

    if saved is None:
        winner = await _find_committed(uow_factory, idempotency_key)
        if winner is None:
            raise OrderAlreadyExists(order_id) from conflict
        return winner

    if metrics is not None:
        metrics.orders_created.inc()

    logger.info(
        "Order created successfully with: orderId=%s, itemName=%s, quantity=%s",
        saved.order_id, saved.item_name, saved.quantity,
    )
    return saved


async def _find_committed(uow_factory: UnitOfWorkFactory, idempotency_key: str) -> Order | None:
    """一意制約違反のあと、先に commit された同じ冪等キーの注文を探す。"""
    async with uow_factory() as uow:
        winner = await uow.orders.find_by_idempotency_key(idempotency_key)
    if winner is None:
        return None
    logger.info(
        "Concurrent create lost the race. Returning committed order: orderId=%s, idempotencyKey=%s",
        winner.order_id, idempotency_key,
    )
    return winner


async def increase_quantity(
    uow_factory: UnitOfWorkFactory,
    order_id: str,
    delta: int,
    max_attempts: int = 5,
) -> Order:
    """
    数量加算コマンド

    読み込み → 加算 → バージョン付き保存。
    競合したら最新を読み直してやり直す (最大 max_attempts 回)。
    上書きで他の更新を失うことはない。
    """
    if delta <= 0:
        raise ValueError("Delta must be positive")
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    logger.info("Updating quantity for orderId=%s by %s", order_id, delta)

    for attempt in range(1, max_attempts + 1):
        async with uow_factory() as uow:
            order = await uow.orders.find_by_id(order_id)
            if order is None:
                raise NotFoundError(order_id)
            try:
                updated = await uow.orders.save(
                    order.model_copy(update={"quantity": order.quantity + delta})
                )
                await uow.commit()
                return updated
            except OptimisticConflict:
                if attempt == max_attempts:
                    raise
                logger.info(
                    "Version conflict on orderId=%s (attempt %s/%s), re-reading",
                    order_id, attempt, max_attempts,
                )
    raise AssertionError("unreachable")
