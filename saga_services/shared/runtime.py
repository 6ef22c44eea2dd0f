"""
Shared — サービスランタイム

1 つのサービスが使うクライアント (DB エンジン, Redis) とバックグラウンドタスク
(Outbox ディスパッチャ, コンシューマー) を明示的に組み立てて所有する。
プロセス全体のシングルトンは使わず、FastAPI の lifespan から start / stop を呼ぶ。

停止の順序:
  1. shutdown_event をセット
  2. コンシューマーが処理中のメッセージを終えるのを待つ
  3. ディスパッチャの現在の周期が終わるのを待つ
  4. Redis を閉じ、DB エンジンを破棄する
"""

import asyncio
import logging
from collections.abc import Iterable

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from .broker import Broker, RedisStreamBroker
from .config import Settings
from .consumer import CommitHook, EventConsumer, Handler
from .database import SHARED_TABLES, create_engine, create_session_factory, init_schema
from .outbox import OutboxDispatcher

logger = logging.getLogger(__name__)


class ServiceRuntime:
    def __init__(
        self,
        settings: Settings,
        *,
        schema: Iterable[str] = (),
        engine: AsyncEngine | None = None,
        broker: Broker | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine or create_engine(settings.database_url)
        self.session_factory = create_session_factory(self.engine)
        self.broker = broker or RedisStreamBroker.from_url(
            settings.redis_url, settings.stream_partitions
        )
        self.schema = [*SHARED_TABLES, *schema]
        self.dispatcher = OutboxDispatcher(
            self.session_factory,
            self.broker,
            interval=settings.outbox_interval,
            batch_size=settings.outbox_batch_size,
            service=settings.service_name,
        )
        self.consumers: list[EventConsumer] = []
        self._shutdown: asyncio.Event | None = None
        self._consumer_tasks: list[asyncio.Task] = []
        self._dispatcher_task: asyncio.Task | None = None

    @property
    def service_name(self) -> str:
        return self.settings.service_name

    def add_consumer(
        self,
        topics: list[str],
        handler: Handler,
        *,
        on_committed: CommitHook | None = None,
        name: str | None = None,
    ) -> EventConsumer:
        consumer = EventConsumer(
            name or f"{self.service_name}-consumer",
            topics,
            self.broker,
            self.session_factory,
            handler,
            service=self.service_name,
            on_committed=on_committed,
            block_ms=self.settings.consumer_block_ms,
        )
        self.consumers.append(consumer)
        return consumer

    async def prepare(self) -> None:
        """テーブルを作成する（バックグラウンドタスクは起動しない）。"""
        await init_schema(self.engine, self.schema)

    async def start(self) -> None:
        await self.prepare()
        self._shutdown = asyncio.Event()
        for consumer in self.consumers:
            task = asyncio.create_task(consumer.run(self._shutdown), name=consumer.name)
            task.add_done_callback(self._on_task_done)
            self._consumer_tasks.append(task)
        self._dispatcher_task = asyncio.create_task(
            self.dispatcher.run(self._shutdown), name=f"{self.service_name}-outbox"
        )
        self._dispatcher_task.add_done_callback(self._on_task_done)
        logger.info("%s started with %d consumer(s)", self.service_name, len(self.consumers))

    async def stop(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()
            await asyncio.gather(*self._consumer_tasks, return_exceptions=True)
            if self._dispatcher_task is not None:
                await asyncio.gather(self._dispatcher_task, return_exceptions=True)
        await self.broker.close()
        await self.engine.dispose()
        logger.info("%s stopped", self.service_name)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s halted", task.get_name(), exc_info=exc)


def get_runtime(request: Request) -> ServiceRuntime:
    """FastAPI の依存関係: app.state に保持したランタイムを返す。"""
    return request.app.state.runtime
