"""
Shared — Transactional Outbox

状態変更とイベント発行を「同時に」成功させるためのパターン。

  ┌──────────────┐  同じトランザクション  ┌─────────┐
  │ 業務テーブル  │ ◀────────────────────▶ │ outbox  │
  └──────────────┘                        └────┬────┘
                                               │ ディスパッチャ (定期実行)
                                          ┌────▼────┐
                                          │ Broker  │
                                          └─────────┘

「イベントを出すと決めた」ことはローカルのコミットで永続化され、
「ブローカーへ送信した」ことはディスパッチャが別ステップとして再試行する。
ローカルのコミットとブローカーへの publish の間でクラッシュしても、イベントは失われない。

送信に失敗したレコードは attempts と last_error を更新して次の周期に再送する（無制限）。
sent_at は一度セットしたら消さない。レコードの削除は基盤の責務ではない。
"""

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import metrics
from .broker import Broker
from .errors import EventValidationError, PublishError
from .events import (
    EventEnvelope,
    EventType,
    Payload,
    create_event,
    ensure_valid,
    now_iso,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxRecord:
    event_id: str
    topic: str
    key: str
    event: str
    sent_at: str | None
    attempts: int
    last_error: str | None
    created_at: str
    updated_at: str

    @property
    def pending(self) -> bool:
        return self.sent_at is None

    @property
    def envelope(self) -> EventEnvelope:
        return EventEnvelope.from_json(self.event)


def _to_record(row) -> OutboxRecord:
    return OutboxRecord(
        event_id=row.event_id,
        topic=row.topic,
        key=row.event_key,
        event=row.event,
        sent_at=row.sent_at,
        attempts=row.attempts,
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def enqueue(session: AsyncSession, topic: str, envelope: EventEnvelope) -> bool:
    """
    イベントを Outbox にステージングする（コミットは呼び出し側の責務）。

    不正なイベントはここで EventValidationError になり、ステージングされない。
    同じ eventId の二重登録は何もしない。新規に登録したら True を返す。
    """
    ensure_valid(envelope)
    now = now_iso()
    result = await session.execute(
        text("""
            INSERT INTO outbox
                (event_id, topic, event_key, event, attempts, created_at, updated_at)
            VALUES
                (:event_id, :topic, :key, :event, 0, :now, :now)
            ON CONFLICT (event_id) DO NOTHING
        """),
        {
            "event_id": envelope.event_id,
            "topic": topic,
            "key": envelope.key,
            "event": envelope.to_json(),
            "now": now,
        },
    )
    inserted = result.rowcount == 1
    if not inserted:
        logger.debug("Outbox already holds %s, ignoring", envelope.event_id)
    return inserted


async def emit(
    session: AsyncSession,
    event_type: EventType,
    payload: Payload,
    *,
    cause: EventEnvelope,
    causation_id: str | None = None,
) -> EventEnvelope:
    """
    受信イベントを原因とする後続イベントを生成してステージングする。

    correlationId は受信イベントから引き継ぎ、causationId は受信イベントの eventId。
    """
    envelope = create_event(
        event_type,
        cause.key,
        payload,
        correlation_id=cause.correlation_id,
        causation_id=causation_id or cause.event_id,
    )
    await enqueue(session, event_type.topic, envelope)
    return envelope


async def get_record(session: AsyncSession, event_id: str) -> OutboxRecord | None:
    result = await session.execute(
        text("SELECT * FROM outbox WHERE event_id = :event_id"),
        {"event_id": event_id},
    )
    row = result.fetchone()
    return _to_record(row) if row else None


async def list_records(session: AsyncSession, topic: str | None = None) -> list[OutboxRecord]:
    """Outbox の全レコードを登録順に返す（テスト・運用調査用）。"""
    if topic is None:
        result = await session.execute(
            text("SELECT * FROM outbox ORDER BY created_at ASC, event_id ASC")
        )
    else:
        result = await session.execute(
            text("""
                SELECT * FROM outbox WHERE topic = :topic
                ORDER BY created_at ASC, event_id ASC
            """),
            {"topic": topic},
        )
    return [_to_record(row) for row in result.fetchall()]


async def pending_count(session: AsyncSession) -> int:
    result = await session.execute(
        text("SELECT COUNT(*) FROM outbox WHERE sent_at IS NULL")
    )
    return result.scalar_one()


async def stats(session: AsyncSession) -> dict:
    """未送信件数と再試行状況。attempts の多いレコードはアラート対象。"""
    result = await session.execute(
        text("""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN sent_at IS NULL THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN sent_at IS NULL AND attempts > 0 THEN 1 ELSE 0 END) AS failing,
                MAX(attempts) AS max_attempts
            FROM outbox
        """)
    )
    row = result.fetchone()
    return {
        "total": row.total or 0,
        "pending": row.pending or 0,
        "failing": row.failing or 0,
        "max_attempts": row.max_attempts or 0,
    }


class OutboxDispatcher:
    """
    Outbox のディスパッチャ

    コンシューマーループとは独立に一定間隔で動き、未送信レコードを古い順に
    batch_size 件ずつブローカーへ送信する。
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        broker: Broker,
        *,
        interval: float = 0.5,
        batch_size: int = 50,
        service: str = "app",
    ) -> None:
        self.session_factory = session_factory
        self.broker = broker
        self.interval = interval
        self.batch_size = batch_size
        self.service = service

    async def dispatch_once(self) -> int:
        """
        1 周期分の送信を行い、送信できた件数を返す。

        あるキーのレコードが失敗したら、同じ周期内ではそのキーの後続レコードを送らない。
        """
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM outbox
                    WHERE sent_at IS NULL
                    ORDER BY created_at ASC, event_id ASC
                    LIMIT :limit
                """),
                {"limit": self.batch_size},
            )
            pending = [_to_record(row) for row in result.fetchall()]

        published = 0
        blocked_keys: set[str] = set()
        for record in pending:
            if record.key in blocked_keys:
                continue
            try:
                await self.broker.publish(record.topic, record.envelope)
            except (PublishError, EventValidationError) as exc:
                blocked_keys.add(record.key)
                await self._mark_failed(record, exc)
                continue
            await self._mark_sent(record)
            published += 1
        return published

    async def _mark_sent(self, record: OutboxRecord) -> None:
        now = now_iso()
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    UPDATE outbox
                    SET sent_at = :now, updated_at = :now
                    WHERE event_id = :event_id AND sent_at IS NULL
                """),
                {"event_id": record.event_id, "now": now},
            )
            await session.commit()

    async def _mark_failed(self, record: OutboxRecord, exc: Exception) -> None:
        logger.warning(
            "Publish of %s to %s failed (attempt %d): %s",
            record.event_id, record.topic, record.attempts + 1, exc,
        )
        metrics.OUTBOX_PUBLISH_FAILURES.labels(self.service, record.topic).inc()
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    UPDATE outbox
                    SET attempts = attempts + 1, last_error = :error, updated_at = :now
                    WHERE event_id = :event_id
                """),
                {"event_id": record.event_id, "error": str(exc), "now": now_iso()},
            )
            await session.commit()

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで一定間隔でディスパッチする。"""
        logger.info(
            "Outbox dispatcher started (interval=%.2fs, batch=%d)",
            self.interval, self.batch_size,
        )
        while not shutdown_event.is_set():
            try:
                await self.dispatch_once()
            except SQLAlchemyError:
                # ストアが使えない間はループが止まるだけで、状態は壊れない
                logger.exception("Outbox dispatch tick failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox dispatcher stopped")
