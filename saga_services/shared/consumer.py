"""
Shared — イベントコンシューマーループ

各サービスは購読するトピックの集合ごとに 1 つのコンシューマーを動かす。
メッセージは 1 件ずつ到着順に処理する（同じ注文のイベントは並列化しない）。

  受信 → パース → eventId 取り出し → 検証 → 冪等性ガード → ハンドラ → ACK
                                                     │
                                         例外 ───────┴──▶ Dead Letter

ハンドラの例外は Dead Letter に回し、ループは次のメッセージへ進む。
Dead Letter のステージング失敗だけはループを止める (ACK しない)。
停止は shutdown_event による協調的なもので、処理中のメッセージは最後まで処理する。
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import metrics
from .broker import Broker, BrokerMessage
from .dead_letter import DeadLetterRouter
from .errors import BrokerError
from .events import EventEnvelope, ensure_valid
from .idempotency import with_idempotency

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, EventEnvelope], Awaitable[Any]]
CommitHook = Callable[[EventEnvelope, Any], Awaitable[None]]


class ProcessOutcome(str, Enum):
    PROCESSED = "ok"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_letter"
    SKIPPED = "skipped"


class EventConsumer:
    """
    購読トピックの集合に対する 1 本のコンシューマーループ

    name はコンシューマーグループ名であり、冪等性マーカーの consumer 名でもある。
    on_committed はハンドラのトランザクションがコミットされた後に呼ばれる
    (ライブ購読者への配信など、ロールバックされうる処理の外に置きたいもの)。
    """

    def __init__(
        self,
        name: str,
        topics: list[str],
        broker: Broker,
        session_factory: sessionmaker,
        handler: Handler,
        *,
        service: str = "app",
        on_committed: CommitHook | None = None,
        batch_size: int = 10,
        block_ms: int = 1000,
    ) -> None:
        self.name = name
        self.group = name
        self.topics = list(topics)
        self.broker = broker
        self.session_factory = session_factory
        self.handler = handler
        self.service = service
        self.on_committed = on_committed
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.dead_letters = DeadLetterRouter(session_factory, name)

    async def process(self, message: BrokerMessage) -> ProcessOutcome:
        """1 件のメッセージを処理する。例外は Dead Letter に変換する。"""
        if message.value is None:
            return ProcessOutcome.SKIPPED

        started = time.perf_counter()
        try:
            envelope = EventEnvelope.from_json(message.value)
            ensure_valid(envelope)
            async with self.session_factory() as session:
                outcome = await with_idempotency(
                    session,
                    self.name,
                    envelope.event_id,
                    lambda: self.handler(session, envelope),
                )
        except Exception as exc:
            logger.exception(
                "Consumer %s failed on %s/%s", self.name, message.topic, message.message_id
            )
            await self.dead_letters.route(message, exc)
            metrics.EVENTS_PROCESSED.labels(
                self.service, message.topic, ProcessOutcome.DEAD_LETTERED.value
            ).inc()
            return ProcessOutcome.DEAD_LETTERED

        if outcome.already_processed:
            metrics.EVENTS_PROCESSED.labels(
                self.service, message.topic, ProcessOutcome.DUPLICATE.value
            ).inc()
            return ProcessOutcome.DUPLICATE

        if self.on_committed is not None:
            try:
                await self.on_committed(envelope, outcome.result)
            except Exception:
                # コミット済みなので Dead Letter にはしない
                logger.exception("Post-commit hook of %s failed", self.name)

        metrics.EVENTS_PROCESSED.labels(
            self.service, message.topic, ProcessOutcome.PROCESSED.value
        ).inc()
        metrics.PROCESSING_DURATION.labels(self.service, message.topic).observe(
            time.perf_counter() - started
        )
        logger.debug("Consumer %s processed %s", self.name, envelope.event_id)
        return ProcessOutcome.PROCESSED

    async def poll(
        self,
        *,
        pending: bool = False,
        shutdown_event: asyncio.Event | None = None,
    ) -> int:
        """1 回読み取り、処理して ACK する。処理した件数を返す。"""
        messages = await self.broker.read(
            self.topics,
            self.group,
            self.name,
            count=self.batch_size,
            block_ms=self.block_ms,
            pending=pending,
        )
        handled = 0
        for message in messages:
            if shutdown_event is not None and shutdown_event.is_set():
                # 未 ACK のまま残し、再起動後に再配信させる
                break
            await self.process(message)
            await self.broker.ack(message, self.group)
            handled += 1
        return handled

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまでメッセージを処理する。

        起動直後は前回 ACK できなかったメッセージを先に処理し、
        それが尽きてから新着メッセージを読む。
        """
        await self.broker.ensure_group(self.topics, self.group)
        logger.info("Consumer %s subscribed to %s", self.name, ", ".join(self.topics))

        backlog = True
        while not shutdown_event.is_set():
            try:
                handled = await self.poll(pending=backlog, shutdown_event=shutdown_event)
            except BrokerError:
                logger.warning("Broker unavailable for %s, retrying", self.name, exc_info=True)
                await asyncio.sleep(1.0)
                continue
            if backlog and handled == 0:
                backlog = False
                logger.info("Consumer %s caught up with pending messages", self.name)
        logger.info("Consumer %s stopped", self.name)
