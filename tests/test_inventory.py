"""Tests for the HTTP inventory client."""

from __future__ import annotations

import json

import httpx
import pytest

from order_service.errors import TransientEffectFailure
from order_service.inventory import HttpInventoryClient


def _client(handler) -> HttpInventoryClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpInventoryClient("http://inventory:8002/", http)


class TestHttpInventoryClient:
    @pytest.mark.asyncio
    async def test_reserve_posts_order_id(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"success": True})

        await _client(handler).reserve_stock("ord-1")

        assert len(requests) == 1
        assert str(requests[0].url) == "http://inventory:8002/commands/inventory/reserve"
        assert json.loads(requests[0].content) == {"order_id": "ord-1"}

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(503, text="maintenance")

        with pytest.raises(TransientEffectFailure, match="503"):
            await _client(handler).reserve_stock("ord-1")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientEffectFailure):
            await _client(handler).reserve_stock("ord-1")
