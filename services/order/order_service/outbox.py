"""
Order Service — アウトボックスリレー

未処理のアウトボックス行を定期的に読み、event_type に応じてデコードして
プロセス内チャネルに流し、processed に印をつける。

配送保証は at-least-once:
    発行してから commit するまでの間にプロセスが落ちる (または commit が失敗する)
    と、同じイベントが次の周期で再発行される。コンシューマ側で重複を抑止する。

1 件のデコード / 発行に失敗しても、そのイベントを未処理のまま残すだけで
同じバッチの他のイベントは処理を続ける。壊れたイベントは毎周期再試行される
(デッドレターはない)。

ワーカープールが満杯 (WorkerPoolSaturated) になったらバッチをそこで打ち切り、
それまでの印だけ commit する。
"""

import asyncio
import logging

from .dispatch import EventChannel
from .errors import WorkerPoolSaturated
from .events import decode_event
from .repository import UnitOfWorkFactory

logger = logging.getLogger(__name__)


class OutboxRelay:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        channel: EventChannel,
        batch_size: int = 100,
    ) -> None:
        self.uow_factory = uow_factory
        self.channel = channel
        self.batch_size = batch_size

    async def process_outbox(self) -> int:
        """1 周期分の処理。発行できたイベント数を返す。"""
        published = 0
        async with self.uow_factory() as uow:
            events = await uow.outbox.find_unprocessed(self.batch_size)
            if not events:
                return 0

            for i, event in enumerate(events):
                try:
                    domain_event = decode_event(event.event_type, event.payload)
                    await self.channel.publish(event.event_type, domain_event)
                    await uow.outbox.mark_processed(event.id)
                    published += 1
                except WorkerPoolSaturated:
                    # 残りは投入せず次周期へ。行ロックを握ったまま投入タイムアウトを重ねない
                    logger.warning(
                        "Worker pool saturated at outbox event id=%s; deferring %s events to next cycle",
                        event.id, len(events) - i,
                    )
                    break
                except Exception:
                    logger.exception(
                        "Failed to relay outbox event id=%s type=%s aggregateId=%s; will retry",
                        event.id, event.event_type, event.aggregate_id,
                    )

            # 発行済みの印はここで確定する。失敗すれば次周期に全件再発行
            await uow.commit()

        logger.info("Relayed %s/%s outbox events", published, len(events))
        return published


async def run_periodically(
    relay: OutboxRelay,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """
    shutdown_event がセットされるまで、interval 秒おきに process_outbox を呼ぶ。
    1 周期の失敗はログに残して次の周期へ進む。
    """
    logger.info("Outbox relay started (interval=%ss)", interval)
    while not shutdown_event.is_set():
        try:
            await relay.process_outbox()
        except Exception:
            logger.exception("Outbox relay cycle failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Outbox relay stopped")
