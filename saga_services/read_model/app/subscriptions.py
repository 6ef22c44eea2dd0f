"""
Read Model Service — ライブ購読ハブ

注文 ID ごとにライブ購読者 (キュー) を登録し、投影の更新を配る。
登録は subscribe() のスコープ内だけ有効で、切断・例外・キャンセルの
どの経路で抜けても必ず登録が外れる。

ハブはプロセス内のメモリにしか存在しない。複数インスタンスで動かすと、
購読者は自分が接続したインスタンスが投影した更新しか受け取れない。
その場合は共有の Pub/Sub による配信層を前段に置く。
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger(__name__)


class SubscriptionHub:
    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    @asynccontextmanager
    async def subscribe(self, order_id: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(order_id, set()).add(queue)
        logger.debug("Subscriber attached to %s", order_id)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(order_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[order_id]
            logger.debug("Subscriber detached from %s", order_id)

    def publish(self, order_id: str, update: dict[str, Any]) -> int:
        """購読者全員のキューに更新を積み、配った数を返す。"""
        subscribers = self._subscribers.get(order_id, set())
        for queue in subscribers:
            queue.put_nowait(update)
        return len(subscribers)

    def subscriber_count(self, order_id: str | None = None) -> int:
        if order_id is not None:
            return len(self._subscribers.get(order_id, ()))
        return sum(len(queues) for queues in self._subscribers.values())
