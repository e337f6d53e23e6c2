"""
Order Service — ストアのインターフェース

OrderStore / OutboxStore は同じ UnitOfWork の中で使う。
UnitOfWork を commit せずに抜けると、両方の書き込みがまとめて捨てられる。
"""

from typing import Callable, Protocol, Sequence

from .models import Order, OutboxEvent


class OrderStore(Protocol):
    async def save(self, order: Order) -> Order:
        """
        version == 0 なら新規 INSERT、それ以外はバージョン付き UPDATE。

        Raises:
            DuplicateKeyRace: idempotency_key の一意制約違反
            OrderAlreadyExists: order_id の主キー違反
            OptimisticConflict: 保存済みの version と一致しない
        """
        ...

    async def find_by_id(self, order_id: str) -> Order | None: ...

    async def find_by_idempotency_key(self, key: str) -> Order | None: ...

    async def list(self, offset: int, limit: int, item_name: str | None = None) -> list[Order]: ...

    async def count(self, item_name: str | None = None) -> int: ...


class OutboxStore(Protocol):
    async def save(self, event: OutboxEvent) -> None: ...

    async def find_unprocessed(self, limit: int) -> Sequence[OutboxEvent]: ...

    async def mark_processed(self, event_id: str) -> None: ...


class UnitOfWork(Protocol):
    orders: OrderStore
    outbox: OutboxStore

    async def __aenter__(self) -> "UnitOfWork": ...

    async def __aexit__(self, exc_type, exc, tb) -> None: ...

    async def commit(self) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]
