"""
Order Service — サーキットブレーカーとリトライ

RetryPolicy: 1 イベントの一時的な失敗を吸収する (固定間隔で最大 N 回)。
CircuitBreaker: リトライを使い切った失敗が連続したら開き、
                以後の下流呼び出しをすべてスキップする。

二つは粒度の違う独立した制御。
ブレーカーは自動では閉じない。reset() で外部から閉じる。
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from .errors import CircuitOpenError, TransientEffectFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    連続失敗回数と開閉状態を持つ共有状態。

    全コンシューマから並行に呼ばれるので、状態の読み書きは
    すべて 1 つのロックの中で行う。
    """

    def __init__(self, name: str = "inventory", failure_threshold: int = 3) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self._lock = asyncio.Lock()
        self._consecutive_failures = 0
        self._total_failures = 0
        self._open = False
        self._opened_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def check(self) -> None:
        """開いていれば CircuitOpenError。"""
        async with self._lock:
            if self._open:
                raise CircuitOpenError(self.name)

    async def record_success(self) -> None:
        # 成功は連続失敗数を 0 に戻すだけ。開いたブレーカーは閉じない
        async with self._lock:
            self._consecutive_failures = 0

    async def record_failure(self) -> int:
        async with self._lock:
            self._consecutive_failures += 1
            self._total_failures += 1
            count = self._consecutive_failures
            if not self._open and count >= self.failure_threshold:
                self._open = True
                self._opened_at = datetime.now(timezone.utc)
                logger.error(
                    "Circuit %s OPENED due to repeated failures (consecutiveFailures=%s)",
                    self.name, count,
                )
            return count

    async def reset(self) -> None:
        async with self._lock:
            was_open = self._open
            self._open = False
            self._opened_at = None
            self._consecutive_failures = 0
        logger.warning("Circuit %s reset (wasOpen=%s)", self.name, was_open)

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": "open" if self._open else "closed",
            "consecutive_failures": self._consecutive_failures,
            "total_failures": self._total_failures,
            "failure_threshold": self.failure_threshold,
            "opened_at": self._opened_at.isoformat() if self._opened_at else None,
        }


class RetryPolicy:
    """固定間隔リトライ。retry_on に該当しない例外は即座に伝播する。"""

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 1.0,
        retry_on: tuple[type[BaseException], ...] = (TransientEffectFailure,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.retry_on = retry_on
        self._sleep = sleep

    async def run(self, func: Callable[..., Awaitable[T]], *args) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args)
            except self.retry_on as e:
                if attempt == self.max_attempts:
                    raise
                logger.warning(
                    "Attempt %s/%s failed: %s. Retrying in %.1fs",
                    attempt, self.max_attempts, e, self.delay,
                )
                await self._sleep(self.delay)
        raise AssertionError("unreachable")
