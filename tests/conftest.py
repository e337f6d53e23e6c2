"""Shared fixtures for order service tests.

Everything runs against the in-memory store and a fake inventory service,
so no PostgreSQL, Redis or network is required.
"""

from __future__ import annotations

import asyncio

import pytest

from order_service.config import Settings
from order_service.errors import TransientEffectFailure
from order_service.memory_store import InMemoryDatabase, MemoryOrderStore
from order_service.metrics import Metrics


class FakeInventory:
    """Inventory effect that records calls and fails a configurable number of times."""

    def __init__(self, failures: int = 0, always_fail: bool = False) -> None:
        self.calls: list[str] = []
        self.failures = failures
        self.always_fail = always_fail

    async def reserve_stock(self, order_id: str) -> None:
        self.calls.append(order_id)
        if self.always_fail or self.failures > 0:
            self.failures -= 1
            raise TransientEffectFailure(f"inventory unavailable for {order_id}")


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def yielding_uow_factory(db: InMemoryDatabase, reads: list[str]):
    """Unit of work whose find_by_id yields to the event loop after reading.

    Lets two coroutines read the same version before either commits.
    """

    class YieldingOrderStore(MemoryOrderStore):
        async def find_by_id(self, order_id: str):
            order = await super().find_by_id(order_id)
            reads.append(order_id)
            await asyncio.sleep(0)
            return order

    def factory():
        uow = db.unit_of_work()
        uow.orders = YieldingOrderStore(uow)
        return uow

    return factory


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def metrics() -> Metrics:
    return Metrics()


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        effect_retry_delay=0.0,
        worker_submit_timeout=0.5,
        outbox_poll_interval=0.01,
    )
