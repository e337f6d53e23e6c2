"""
Order Service — クエリハンドラ (Read 側)

読み取り専用。UnitOfWork は commit せずに閉じる。
"""

import logging

from .errors import NotFoundError
from .models import Order, OrderPage
from .repository import UnitOfWorkFactory

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


async def get_order(uow_factory: UnitOfWorkFactory, order_id: str) -> Order:
    async with uow_factory() as uow:
        order = await uow.orders.find_by_id(order_id)
    if order is None:
        raise NotFoundError(order_id)
    logger.debug("Fetched order with id=%s", order_id)
    return order


async def list_orders(
    uow_factory: UnitOfWorkFactory,
    page: int = 0,
    size: int = 20,
    item_name: str | None = None,
) -> OrderPage:
    """注文一覧をページ単位で返す。item_name 指定時はその商品名で絞り込む。"""
    if page < 0:
        raise ValueError("page must be >= 0")
    if not 1 <= size <= MAX_PAGE_SIZE:
        raise ValueError(f"size must be between 1 and {MAX_PAGE_SIZE}")

    logger.debug("Fetching orders page=%s size=%s itemName=%s", page, size, item_name)
    async with uow_factory() as uow:
        items = await uow.orders.list(page * size, size, item_name)
        total = await uow.orders.count(item_name)
    return OrderPage(items=items, page=page, size=size, total=total)
