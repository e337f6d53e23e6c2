"""
Order Service — 処理済みキー集合 (重複イベントの抑止)

アウトボックスリレーは at-least-once なので、同じイベントが
2 回以上届くことがある。コンシューマは効果を適用する前に
集約 ID をここへ登録し、既にあれば何もしない。

add() は「登録して True」か「既にあって False」を原子的に返す。

2 つの実装:
    InMemoryProcessedKeys — 件数上限 (LRU) と TTL つき。プロセス再起動で消える
    RedisProcessedKeys   — SET NX EX。再起動をまたいで有効
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Protocol

import redis.asyncio as aioredis


class ProcessedKeySet(Protocol):
    async def add(self, key: str) -> bool: ...

    async def contains(self, key: str) -> bool: ...


class InMemoryProcessedKeys:
    def __init__(
        self,
        max_keys: int = 100_000,
        ttl_seconds: float = 86400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_keys = max_keys
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._keys: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def _evict(self, now: float) -> None:
        # 挿入順 = 期限順なので先頭から期限切れを落とす
        while self._keys:
            added_at = next(iter(self._keys.values()))
            if now - added_at < self.ttl_seconds and len(self._keys) <= self.max_keys:
                break
            self._keys.popitem(last=False)

    async def add(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if key in self._keys:
                return False
            self._keys[key] = now
            self._evict(now)
            return True

    async def contains(self, key: str) -> bool:
        with self._lock:
            self._evict(self._clock())
            return key in self._keys


class RedisProcessedKeys:
    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int = 86400,
        prefix: str = "order-service:processed:",
    ) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    async def add(self, key: str) -> bool:
        created = await self.redis.set(self.prefix + key, "1", nx=True, ex=self.ttl_seconds)
        return bool(created)

    async def contains(self, key: str) -> bool:
        return bool(await self.redis.exists(self.prefix + key))
