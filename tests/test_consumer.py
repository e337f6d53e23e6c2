"""Tests for the inventory effect consumer: dedup, retry and circuit breaking."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeInventory
from order_service.consumer import EffectConsumer
from order_service.dedup import InMemoryProcessedKeys
from order_service.events import OrderCreated
from order_service.metrics import Metrics
from order_service.resilience import CircuitBreaker, RetryPolicy


def _consumer(inventory, threshold=3, attempts=3):
    return EffectConsumer(
        inventory=inventory,
        processed=InMemoryProcessedKeys(),
        breaker=CircuitBreaker(failure_threshold=threshold),
        retry=RetryPolicy(max_attempts=attempts, delay=0),
        metrics=Metrics(),
    )


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_redelivered_event_applied_once(self):
        inventory = FakeInventory()
        consumer = _consumer(inventory)

        await consumer.on_event(OrderCreated(order_id="ord-1"))
        await consumer.on_event(OrderCreated(order_id="ord-1"))

        assert inventory.calls == ["ord-1"]

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_applied_once(self):
        inventory = FakeInventory()
        consumer = _consumer(inventory)

        await asyncio.gather(*[
            consumer.on_event(OrderCreated(order_id="ord-1")) for _ in range(10)
        ])

        assert inventory.calls == ["ord-1"]


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_failure_absorbed_by_retry(self):
        inventory = FakeInventory(failures=2)
        consumer = _consumer(inventory)

        await consumer.on_event(OrderCreated(order_id="ord-1"))

        assert inventory.calls == ["ord-1"] * 3
        assert consumer.metrics.registry.get_sample_value("inventory_failures_total") == 0
        assert consumer.breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_one_breaker_failure(self):
        inventory = FakeInventory(always_fail=True)
        consumer = _consumer(inventory)

        await consumer.on_event(OrderCreated(order_id="ord-1"))

        assert len(inventory.calls) == 3
        assert consumer.metrics.registry.get_sample_value("inventory_failures_total") == 1
        assert consumer.breaker.consecutive_failures == 1
        assert consumer.breaker.is_open is False


class TestCircuitBreaking:
    @pytest.mark.asyncio
    async def test_breaker_opens_and_skips_downstream(self):
        inventory = FakeInventory(always_fail=True)
        consumer = _consumer(inventory, threshold=3, attempts=1)

        for i in range(3):
            await consumer.on_event(OrderCreated(order_id=f"ord-{i}"))
        assert consumer.breaker.is_open is True
        calls_when_opened = len(inventory.calls)

        await consumer.on_event(OrderCreated(order_id="ord-next"))

        assert len(inventory.calls) == calls_when_opened
        assert consumer.metrics.registry.get_sample_value("inventory_skipped_total") == 1

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self):
        inventory = FakeInventory(always_fail=True)
        consumer = _consumer(inventory, threshold=3, attempts=1)

        await consumer.on_event(OrderCreated(order_id="ord-1"))
        await consumer.on_event(OrderCreated(order_id="ord-2"))
        inventory.always_fail = False
        inventory.failures = 0
        await consumer.on_event(OrderCreated(order_id="ord-3"))

        assert consumer.breaker.consecutive_failures == 0
        assert consumer.breaker.is_open is False

    @pytest.mark.asyncio
    async def test_breaker_stays_open_until_reset(self):
        inventory = FakeInventory(always_fail=True)
        consumer = _consumer(inventory, threshold=1, attempts=1)

        await consumer.on_event(OrderCreated(order_id="ord-1"))
        assert consumer.breaker.is_open is True

        inventory.always_fail = False
        inventory.failures = 0
        await consumer.on_event(OrderCreated(order_id="ord-2"))
        assert "ord-2" not in inventory.calls

        await consumer.breaker.reset()
        await consumer.on_event(OrderCreated(order_id="ord-3"))
        assert inventory.calls[-1] == "ord-3"

    @pytest.mark.asyncio
    async def test_downstream_errors_never_propagate(self):
        consumer = _consumer(FakeInventory(always_fail=True), attempts=2)
        # must not raise
        await consumer.on_event(OrderCreated(order_id="ord-1"))
