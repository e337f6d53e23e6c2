"""
Order Service — レートリミッタ (固定ウィンドウ)

クライアント (送信元アドレス) ごとにウィンドウ開始時刻とカウントを持つ。
ウィンドウを過ぎていたらリセットしてから数え、上限を超えたら拒否する。

同じキーの更新はキーごとのロックで直列化する。
別のキー同士は互いを待たない (辞書のロックはカウンタ作成と prune の時だけ)。
prune はカウンタのロックを取ってから外すので、数えている最中のカウンタは消えない。

FastAPI の同期依存関数から呼ばれる (= スレッドプール上で並行に動く)
ので threading.Lock を使う。
"""

import threading
import time
from typing import Callable

from .errors import RateLimitExceeded


class RateWindowCounter:
    __slots__ = ("window_start", "count", "lock")

    def __init__(self, window_start: float) -> None:
        self.window_start = window_start
        self.count = 0
        self.lock = threading.Lock()


class RateLimiter:
    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._counters: dict[str, RateWindowCounter] = {}
        self._registry_lock = threading.Lock()

    def _counter(self, key: str) -> RateWindowCounter:
        counter = self._counters.get(key)
        if counter is None:
            with self._registry_lock:
                counter = self._counters.get(key)
                if counter is None:
                    counter = RateWindowCounter(self._clock())
                    self._counters[key] = counter
        return counter

    def _hit(self, key: str) -> tuple[bool, float]:
        while True:
            counter = self._counter(key)
            with counter.lock:
                # 取得後に prune で外されたカウンタには数えない
                if self._counters.get(key) is not counter:
                    continue
                now = self._clock()
                if now - counter.window_start > self.window_seconds:
                    counter.window_start = now
                    counter.count = 0
                counter.count += 1
                allowed = counter.count <= self.max_requests
                retry_after = max(0.0, counter.window_start + self.window_seconds - now)
            return allowed, retry_after

    def admit(self, key: str) -> bool:
        allowed, _ = self._hit(key)
        return allowed

    def check(self, key: str) -> None:
        """admit と同じだが、拒否時は RateLimitExceeded を投げる。"""
        allowed, retry_after = self._hit(key)
        if not allowed:
            raise RateLimitExceeded(key, retry_after)

    def prune(self) -> int:
        """ウィンドウが終わったカウンタを捨てる。捨てた数を返す。"""
        now = self._clock()
        with self._registry_lock:
            expired = 0
            for key, counter in list(self._counters.items()):
                with counter.lock:
                    if now - counter.window_start > self.window_seconds:
                        del self._counters[key]
                        expired += 1
        return expired
