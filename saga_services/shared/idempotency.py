"""
Shared — 冪等性ガード (Idempotent Consumer)

ブローカーは at-least-once で配信するため、同じイベントが複数回届くことがある。
(consumer, event_id) の処理済みマーカーを一意制約付きで INSERT し、
既に存在すれば副作用を実行せずに「処理済み」と返す。

マーカーの INSERT と副作用 (状態変更・Outbox へのステージング) は同じトランザクションで
コミットする。副作用が失敗した場合はマーカーごとロールバックされるので、
再配信時にやり直せる。成功した処理だけが重複排除される。

注意: マーカーを副作用より先にコミットしてはいけない。
失敗したイベントが再配信されても二度と処理されなくなる。
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .events import now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotencyResult:
    already_processed: bool
    result: Any = None


async def with_idempotency(
    session: AsyncSession,
    consumer_name: str,
    event_id: str,
    effect: Callable[[], Awaitable[Any]],
) -> IdempotencyResult:
    """
    effect を高々 1 回だけ (成功するまで) 実行する。

    1. 処理済みマーカーを INSERT（一意制約違反 → 処理済み）
    2. effect を同じセッションで実行
    3. コミット。effect が例外を投げたらロールバックして再送出
    """
    try:
        await session.execute(
            text("""
                INSERT INTO processed_events (consumer, event_id, processed_at)
                VALUES (:consumer, :event_id, :now)
            """),
            {"consumer": consumer_name, "event_id": event_id, "now": now_iso()},
        )
    except IntegrityError:
        # 並行する再配信もここで安全に負ける
        await session.rollback()
        logger.info("Event %s already processed by %s", event_id, consumer_name)
        return IdempotencyResult(already_processed=True)

    try:
        result = await effect()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return IdempotencyResult(already_processed=False, result=result)


async def is_processed(session: AsyncSession, consumer_name: str, event_id: str) -> bool:
    result = await session.execute(
        text("""
            SELECT 1 FROM processed_events
            WHERE consumer = :consumer AND event_id = :event_id
        """),
        {"consumer": consumer_name, "event_id": event_id},
    )
    return result.first() is not None
