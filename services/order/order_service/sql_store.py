"""
Order Service — PostgreSQL ストア

注文とアウトボックスを 1 つの AsyncSession で書き込む。
commit するまでどちらも確定しないので、注文だけ保存されて
通知が失われる (dual write) ことがない。

バージョン番号による楽観的ロック:
    UPDATE ... WHERE version = :expected が 0 行なら、
    他の誰かが先に更新している → OptimisticConflict。
"""

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DuplicateKeyRace, OptimisticConflict, OrderAlreadyExists
from .models import Order, OutboxEvent

_ORDER_COLUMNS = "order_id, item_name, quantity, idempotency_key, version"


def _to_order(row) -> Order:
    return Order(
        order_id=row.order_id,
        item_name=row.item_name,
        quantity=row.quantity,
        idempotency_key=row.idempotency_key,
        version=row.version,
    )


def _translate_integrity_error(e: IntegrityError, order: Order) -> Exception:
    """一意制約違反をどの制約かで振り分ける。"""
    if "idempotency_key" in str(e.orig):
        return DuplicateKeyRace(order.idempotency_key)
    return OrderAlreadyExists(order.order_id)


class SqlOrderStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def save(self, order: Order) -> Order:
        if order.version == 0:
            return await self._insert(order)
        return await self._update(order)

    async def _insert(self, order: Order) -> Order:
        try:
            await self.session.execute(
                text(f"""
                    INSERT INTO orders ({_ORDER_COLUMNS})
                    VALUES (:order_id, :item_name, :quantity, :idempotency_key, 1)
                """),
                {
                    "order_id": order.order_id,
                    "item_name": order.item_name,
                    "quantity": order.quantity,
                    "idempotency_key": order.idempotency_key,
                },
            )
        except IntegrityError as e:
            raise _translate_integrity_error(e, order) from e
        return order.model_copy(update={"version": 1})

    async def _update(self, order: Order) -> Order:
        result = await self.session.execute(
            text("""
                UPDATE orders
                SET item_name = :item_name, quantity = :quantity, version = version + 1
                WHERE order_id = :order_id AND version = :version
            """),
            {
                "order_id": order.order_id,
                "item_name": order.item_name,
                "quantity": order.quantity,
                "version": order.version,
            },
        )
        if result.rowcount == 0:
            raise OptimisticConflict(order.order_id, order.version)
        return order.model_copy(update={"version": order.version + 1})

    async def find_by_id(self, order_id: str) -> Order | None:
        result = await self.session.execute(
            text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE order_id = :id"),
            {"id": order_id},
        )
        row = result.fetchone()
        return _to_order(row) if row else None

    async def find_by_idempotency_key(self, key: str) -> Order | None:
        result = await self.session.execute(
            text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE idempotency_key = :key"),
            {"key": key},
        )
        row = result.fetchone()
        return _to_order(row) if row else None

    async def list(self, offset: int, limit: int, item_name: str | None = None) -> list[Order]:
        where = "WHERE item_name = :item_name" if item_name is not None else ""
        result = await self.session.execute(
            text(f"""
                SELECT {_ORDER_COLUMNS} FROM orders
                {where}
                ORDER BY order_id ASC
                LIMIT :limit OFFSET :offset
            """),
            {"item_name": item_name, "limit": limit, "offset": offset},
        )
        return [_to_order(row) for row in result.fetchall()]

    async def count(self, item_name: str | None = None) -> int:
        where = "WHERE item_name = :item_name" if item_name is not None else ""
        result = await self.session.execute(
            text(f"SELECT COUNT(*) FROM orders {where}"),
            {"item_name": item_name},
        )
        return result.scalar_one()


class SqlOutboxStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def save(self, event: OutboxEvent) -> None:
        await self.session.execute(
            text("""
                INSERT INTO outbox_events
                    (id, aggregate_id, event_type, payload, processed, created_at)
                VALUES
                    (:id, :aggregate_id, :event_type, :payload, :processed, :created_at)
            """),
            event.model_dump(),
        )

    async def find_unprocessed(self, limit: int) -> list[OutboxEvent]:
        """
        未処理イベントを古い順に取得する。
        SKIP LOCKED で、別トランザクションが掴んでいる行は飛ばす。
        """
        result = await self.session.execute(
            text("""
                SELECT id, aggregate_id, event_type, payload, processed, created_at
                FROM outbox_events
                WHERE processed = FALSE
                ORDER BY created_at ASC
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
            """),
            {"limit": limit},
        )
        return [
            OutboxEvent(
                id=row.id,
                aggregate_id=row.aggregate_id,
                event_type=row.event_type,
                payload=row.payload,
                processed=row.processed,
                created_at=row.created_at,
            )
            for row in result.fetchall()
        ]

    async def mark_processed(self, event_id: str) -> None:
        # processed は一方向。TRUE の行は触らない
        await self.session.execute(
            text("""
                UPDATE outbox_events SET processed = TRUE
                WHERE id = :id AND processed = FALSE
            """),
            {"id": event_id},
        )


class SqlUnitOfWork:
    """1 セッション = 1 トランザクション。commit しなければ close 時にロールバック。"""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def __aenter__(self) -> "SqlUnitOfWork":
        self.session: AsyncSession = self._session_factory()
        self.orders = SqlOrderStore(self.session)
        self.outbox = SqlOutboxStore(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.session.close()

    async def commit(self) -> None:
        # 一意制約は INSERT 実行時に検査されるので、ここで制約違反は起きない
        await self.session.commit()


def sql_unit_of_work(session_factory):
    """sessionmaker から UnitOfWork のファクトリを作る。"""
    return lambda: SqlUnitOfWork(session_factory)
