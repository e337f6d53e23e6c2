"""Tests for idempotent order admission and optimistic quantity updates."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import yielding_uow_factory
from order_service import commands
from order_service.errors import (
    NotFoundError,
    OptimisticConflict,
    OrderAlreadyExists,
    SerializationFailure,
)
from order_service.events import ORDER_CREATED
from order_service.models import Order
from order_service.sql_store import sql_unit_of_work


async def _create(db, metrics=None, **overrides):
    args = {
        "order_id": "ord-1",
        "item_name": "Book",
        "quantity": 2,
        "idempotency_key": "test-123",
    }
    args.update(overrides)
    return await commands.create_order(db.unit_of_work, metrics=metrics, **args)


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_order_and_outbox_event(self, db, metrics):
        order = await _create(db, metrics)

        assert order.order_id == "ord-1"
        assert order.item_name == "Book"
        assert order.quantity == 2
        assert order.version == 1
        assert db.orders["ord-1"].idempotency_key == "test-123"

        events = list(db.outbox.values())
        assert len(events) == 1
        assert events[0].aggregate_id == "ord-1"
        assert events[0].event_type == ORDER_CREATED
        assert events[0].processed is False
        assert json.loads(events[0].payload) == {"order_id": "ord-1"}
        assert metrics.registry.get_sample_value("orders_created_total") == 1

    @pytest.mark.asyncio
    async def test_same_idempotency_key_returns_existing_without_write(self, db, metrics):
        first = await _create(db, metrics)
        commits_after_first = db.commits

        second = await _create(db, metrics, item_name="Pen", quantity=9)

        assert second == first
        assert db.commits == commits_after_first
        assert len(db.outbox) == 1
        assert metrics.registry.get_sample_value("orders_created_total") == 1

    @pytest.mark.asyncio
    async def test_empty_idempotency_key_rejected(self, db):
        with pytest.raises(ValueError):
            await _create(db, idempotency_key="")
        assert db.orders == {}

    @pytest.mark.asyncio
    async def test_negative_quantity_rejected(self, db):
        with pytest.raises(ValueError):
            await _create(db, quantity=-1)

    @pytest.mark.asyncio
    async def test_reused_order_id_with_other_key_conflicts(self, db):
        await _create(db)
        with pytest.raises(OrderAlreadyExists):
            await _create(db, idempotency_key="other-key")
        assert len(db.outbox) == 1

    @pytest.mark.asyncio
    async def test_serialization_failure_rolls_back_order(self, db, monkeypatch):
        def broken(event):
            raise SerializationFailure("cannot encode")

        monkeypatch.setattr(commands, "encode_event", broken)

        with pytest.raises(SerializationFailure):
            await _create(db)
        assert db.orders == {}
        assert db.outbox == {}

    @pytest.mark.asyncio
    async def test_lost_race_returns_committed_order(self, db):
        winner = Order(order_id="ord-1", item_name="Book", quantity=2,
                       idempotency_key="test-123", version=1)
        db.orders[winner.order_id] = winner

        def stale_factory():
            # The lookup misses, as if the other insert committed right after it
            uow = db.unit_of_work()

            async def miss(key):
                return None

            uow.orders.find_by_idempotency_key = miss
            return uow

        calls = []

        def factory():
            calls.append(1)
            return stale_factory() if len(calls) == 1 else db.unit_of_work()

        order = await commands.create_order(factory, "ord-1", "Book", 2, "test-123")

        assert order == winner
        assert db.outbox == {}

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_create_one_event(self, db):
        results = await asyncio.gather(*[_create(db) for _ in range(5)])

        assert all(r == results[0] for r in results)
        assert len(db.orders) == 1
        assert len(db.outbox) == 1


def _fetched(row):
    result = MagicMock()
    result.fetchone.return_value = row
    return result


def _sql_factory(*sessions):
    pending = iter(sessions)
    return sql_unit_of_work(lambda: next(pending))


class TestCreateOrderOnSql:
    """PostgreSQL reports the primary key violation before the idempotency key one."""

    WINNER = SimpleNamespace(order_id="ord-1", item_name="Book", quantity=2,
                             idempotency_key="test-123", version=1)

    @staticmethod
    def _losing_session():
        session = AsyncMock()
        session.execute.side_effect = [
            _fetched(None),
            IntegrityError("INSERT INTO orders ...", {}, Exception(
                'duplicate key value violates unique constraint "orders_pkey"'
            )),
        ]
        return session

    @pytest.mark.asyncio
    async def test_concurrent_retransmission_returns_winner(self):
        loser = self._losing_session()
        reread = AsyncMock()
        reread.execute.return_value = _fetched(self.WINNER)

        order = await commands.create_order(
            _sql_factory(loser, reread), "ord-1", "Book", 2, "test-123"
        )

        assert order == Order(order_id="ord-1", item_name="Book", quantity=2,
                              idempotency_key="test-123", version=1)
        loser.commit.assert_not_awaited()
        loser.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_order_id_taken_by_other_key_conflicts(self):
        reread = AsyncMock()
        reread.execute.return_value = _fetched(None)

        with pytest.raises(OrderAlreadyExists):
            await commands.create_order(
                _sql_factory(self._losing_session(), reread), "ord-1", "Book", 2, "test-123"
            )


class TestIncreaseQuantity:
    @pytest.mark.asyncio
    async def test_increase(self, db):
        await _create(db)
        updated = await commands.increase_quantity(db.unit_of_work, "ord-1", 3)

        assert updated.quantity == 5
        assert db.orders["ord-1"].quantity == 5
        assert db.orders["ord-1"].version == 2

    @pytest.mark.asyncio
    async def test_unknown_order(self, db):
        with pytest.raises(NotFoundError):
            await commands.increase_quantity(db.unit_of_work, "missing", 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delta", [0, -2])
    async def test_delta_must_be_positive(self, db, delta):
        with pytest.raises(ValueError):
            await commands.increase_quantity(db.unit_of_work, "ord-1", delta)

    @pytest.mark.asyncio
    async def test_concurrent_increases_do_not_lose_updates(self, db):
        await _create(db)
        reads: list[str] = []
        factory = yielding_uow_factory(db, reads)

        await asyncio.gather(
            commands.increase_quantity(factory, "ord-1", 3),
            commands.increase_quantity(factory, "ord-1", 2),
        )

        assert db.orders["ord-1"].quantity == 7
        assert db.orders["ord-1"].version == 3
        # both read version 1; the loser re-read once
        assert len(reads) == 3

    @pytest.mark.asyncio
    async def test_conflict_surfaces_after_max_attempts(self, db):
        await _create(db)

        def always_stale():
            uow = db.unit_of_work()
            real_find = uow.orders.find_by_id

            async def stale(order_id):
                order = await real_find(order_id)
                return order.model_copy(update={"version": order.version + 10})

            uow.orders.find_by_id = stale
            return uow

        with pytest.raises(OptimisticConflict):
            await commands.increase_quantity(always_stale, "ord-1", 1, max_attempts=2)
        assert db.orders["ord-1"].quantity == 2
