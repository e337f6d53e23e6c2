"""
Order Service — 在庫サービスクライアント

EffectConsumer が呼ぶ下流効果 (在庫引き当て)。
実装は差し替え可能で、テストでは偽物を渡す。

HTTP エラー・タイムアウト・接続失敗はすべて TransientEffectFailure に変換する。
リトライするかどうかはコンシューマ側の RetryPolicy が決める。
"""

from typing import Protocol

import httpx

from .errors import TransientEffectFailure


class InventoryEffect(Protocol):
    async def reserve_stock(self, order_id: str) -> None: ...


class HttpInventoryClient:
    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def reserve_stock(self, order_id: str) -> None:
        try:
            resp = await self.client.post(
                f"{self.base_url}/commands/inventory/reserve",
                json={"order_id": order_id},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransientEffectFailure(
                f"Inventory reservation failed for {order_id}: "
                f"{e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise TransientEffectFailure(
                f"Inventory service error for {order_id}: {e!r}"
            ) from e
