"""
Order Service — コマンドハンドラ (Write 側)

注文の作成とオペレーターコマンドの発行。
どのコマンドも状態変更とイベントのステージングを 1 つのトランザクションでコミットし、
ブローカーへの送信は Outbox のディスパッチャに任せる。
"""

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared import outbox
from saga_services.shared.errors import OrderNotFound
from saga_services.shared.events import (
    CompensationRequested,
    EventEnvelope,
    EventType,
    OrderCreated,
    RetryRequested,
    create_event,
    ensure_valid,
    parse_payload,
)

from . import store
from .aggregate import OrderAggregate

logger = logging.getLogger(__name__)


async def create_order(
    session: AsyncSession,
    items: list[dict[str, Any]],
    total: float,
    order_id: str | None = None,
) -> tuple[OrderAggregate, EventEnvelope]:
    """
    注文作成コマンド

    1. OrderCreated イベントを生成して検証（不正なら何も書かない）
    2. orders に CREATED で INSERT し、履歴に追記
    3. OrderCreated を Outbox にステージング
    4. コミット

    correlationId は注文 ID。以降の Saga のイベントはすべてこれを引き継ぐ。
    """
    order_id = order_id or str(uuid4())
    envelope = create_event(
        EventType.ORDER_CREATED,
        order_id,
        {"orderId": order_id, "items": items, "total": total},
        correlation_id=order_id,
    )
    ensure_valid(envelope)
    created: OrderCreated = parse_payload(envelope)

    agg = OrderAggregate()
    entry = agg.apply_order_created(
        order_id, created.items, created.total, order_id, envelope.timestamp
    )

    await store.insert_order(session, agg)
    await store.append_history(session, order_id, entry)
    await outbox.enqueue(session, EventType.ORDER_CREATED.topic, envelope)
    await session.commit()

    logger.info("Order %s created (total=%.2f)", order_id, created.total)
    return agg, envelope


async def _stage_command(
    session: AsyncSession,
    order_id: str,
    event_type: EventType,
    payload: RetryRequested | CompensationRequested,
    issued_by: str,
) -> EventEnvelope:
    agg = await store.load_order(session, order_id)
    if agg is None:
        raise OrderNotFound(f"Order {order_id} not found")

    envelope = create_event(
        event_type,
        order_id,
        payload,
        correlation_id=agg.correlation_id,
        headers={"issuedBy": issued_by},
    )
    await outbox.enqueue(session, event_type.topic, envelope)
    await session.commit()
    return envelope


async def request_retry(
    session: AsyncSession, order_id: str, step: str, issued_by: str = "operator"
) -> EventEnvelope:
    """再試行コマンド: 失敗したステップをもう一度実行させる。"""
    envelope = await _stage_command(
        session,
        order_id,
        EventType.RETRY_REQUESTED,
        RetryRequested(order_id=order_id, step=step),
        issued_by,
    )
    logger.info("Retry of %s requested for order %s", step, order_id)
    return envelope


async def request_compensation(
    session: AsyncSession, order_id: str, action: str, issued_by: str = "operator"
) -> EventEnvelope:
    """補償コマンド: 在庫解放または返金をオペレーターが明示的に要求する。"""
    envelope = await _stage_command(
        session,
        order_id,
        EventType.COMPENSATION_REQUESTED,
        CompensationRequested(order_id=order_id, action=action),
        issued_by,
    )
    logger.info("Compensation %s requested for order %s", action, order_id)
    return envelope
