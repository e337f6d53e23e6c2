"""
Order Service — インメモリストア

PostgreSQL ストアと同じ制約 (一意キー・バージョン検査・原子的 commit)
を持つメモリ実装。ローカル実行とテストで使う。

書き込みは UnitOfWork 内に溜めておき、commit 時にロックを取って
制約を再検査してから一括で反映する。
"""

import threading

from .errors import DuplicateKeyRace, OptimisticConflict, OrderAlreadyExists
from .models import Order, OutboxEvent


class InMemoryDatabase:
    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}
        self.outbox: dict[str, OutboxEvent] = {}
        self.lock = threading.Lock()
        self.commits = 0

    def unit_of_work(self) -> "MemoryUnitOfWork":
        return MemoryUnitOfWork(self)

    def check_order(self, order: Order) -> None:
        """保存しようとしている注文が制約を満たすか検査する。"""
        if order.version == 0:
            if order.order_id in self.orders:
                existing = self.orders[order.order_id]
                if existing.idempotency_key == order.idempotency_key:
                    raise DuplicateKeyRace(order.idempotency_key)
                raise OrderAlreadyExists(order.order_id)
            if any(o.idempotency_key == order.idempotency_key for o in self.orders.values()):
                raise DuplicateKeyRace(order.idempotency_key)
            return
        current = self.orders.get(order.order_id)
        if current is None or current.version != order.version:
            raise OptimisticConflict(order.order_id, order.version)


class MemoryOrderStore:
    def __init__(self, uow: "MemoryUnitOfWork") -> None:
        self._uow = uow
        self._db = uow.db

    async def save(self, order: Order) -> Order:
        with self._db.lock:
            self._db.check_order(order)
        self._uow.staged_orders.append(order)
        return order.model_copy(update={"version": order.version + 1})

    async def find_by_id(self, order_id: str) -> Order | None:
        order = self._db.orders.get(order_id)
        return order.model_copy() if order else None

    async def find_by_idempotency_key(self, key: str) -> Order | None:
        for order in self._db.orders.values():
            if order.idempotency_key == key:
                return order.model_copy()
        return None

    def _matching(self, item_name: str | None) -> list[Order]:
        orders = sorted(self._db.orders.values(), key=lambda o: o.order_id)
        if item_name is None:
            return orders
        return [o for o in orders if o.item_name == item_name]

    async def list(self, offset: int, limit: int, item_name: str | None = None) -> list[Order]:
        return [o.model_copy() for o in self._matching(item_name)[offset:offset + limit]]

    async def count(self, item_name: str | None = None) -> int:
        return len(self._matching(item_name))


class MemoryOutboxStore:
    def __init__(self, uow: "MemoryUnitOfWork") -> None:
        self._uow = uow
        self._db = uow.db

    async def save(self, event: OutboxEvent) -> None:
        self._uow.staged_events.append(event)

    async def find_unprocessed(self, limit: int) -> list[OutboxEvent]:
        pending = [e for e in self._db.outbox.values() if not e.processed]
        pending.sort(key=lambda e: e.created_at)
        return [e.model_copy() for e in pending[:limit]]

    async def mark_processed(self, event_id: str) -> None:
        self._uow.staged_marks.append(event_id)


class MemoryUnitOfWork:
    def __init__(self, db: InMemoryDatabase) -> None:
        self.db = db
        self.staged_orders: list[Order] = []
        self.staged_events: list[OutboxEvent] = []
        self.staged_marks: list[str] = []
        self.orders = MemoryOrderStore(self)
        self.outbox = MemoryOutboxStore(self)

    async def __aenter__(self) -> "MemoryUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._discard()

    def _discard(self) -> None:
        self.staged_orders.clear()
        self.staged_events.clear()
        self.staged_marks.clear()

    async def commit(self) -> None:
        with self.db.lock:
            try:
                # 他の UnitOfWork が先に commit しているかもしれないので再検査
                for order in self.staged_orders:
                    self.db.check_order(order)
            except Exception:
                self._discard()
                raise
            for order in self.staged_orders:
                self.db.orders[order.order_id] = order.model_copy(
                    update={"version": order.version + 1}
                )
            for event in self.staged_events:
                self.db.outbox[event.id] = event.model_copy()
            for event_id in self.staged_marks:
                if event_id in self.db.outbox:
                    self.db.outbox[event_id].processed = True
            self.db.commits += 1
        self._discard()
