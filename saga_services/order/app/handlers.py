"""
Order Service — Saga ステップハンドラ

下流サービスの結果イベントとオペレーターコマンドを注文集約に適用する。
注文の status を書き換えるのはこのハンドラだけ。

  inventory.*  ─┐
  payment.*    ─┼──▶ OrderAggregate.apply ──▶ orders / order_history
  shipping.*   ─┤
  ops.*        ─┘
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.errors import OrderNotFound
from saga_services.shared.events import EventEnvelope, EventType

from . import store

logger = logging.getLogger(__name__)

TOPICS = [
    EventType.INVENTORY_RESERVED.topic,
    EventType.INVENTORY_FAILED.topic,
    EventType.INVENTORY_RELEASED.topic,
    EventType.PAYMENT_AUTHORIZED.topic,
    EventType.PAYMENT_FAILED.topic,
    EventType.ORDER_SHIPPED.topic,
    EventType.SHIPPING_FAILED.topic,
    EventType.PAYMENT_REFUNDED.topic,
    EventType.RETRY_REQUESTED.topic,
    EventType.COMPENSATION_REQUESTED.topic,
]


def _details(envelope: EventEnvelope) -> dict:
    return {k: v for k, v in envelope.payload.items() if k != "orderId"}


async def handle(session: AsyncSession, envelope: EventEnvelope) -> dict | None:
    """
    受信イベントを注文に適用し、追記した履歴エントリを返す。

    許可されていない遷移は InvalidTransition を送出する (Dead Letter 行き)。
    """
    event_type = envelope.event_type
    match event_type:
        case (
            EventType.INVENTORY_RESERVED
            | EventType.INVENTORY_FAILED
            | EventType.INVENTORY_RELEASED
            | EventType.PAYMENT_AUTHORIZED
            | EventType.PAYMENT_FAILED
            | EventType.PAYMENT_REFUNDED
            | EventType.ORDER_SHIPPED
            | EventType.SHIPPING_FAILED
            | EventType.RETRY_REQUESTED
            | EventType.COMPENSATION_REQUESTED
        ):
            return await _apply(session, envelope, event_type)
        case _:
            logger.debug("Order service ignores %s", envelope.type)
            return None


async def _apply(
    session: AsyncSession, envelope: EventEnvelope, event_type: EventType
) -> dict:
    order_id = envelope.payload["orderId"]
    agg = await store.load_order(session, order_id)
    if agg is None:
        raise OrderNotFound(f"Order {order_id} not found")

    previous = agg.status
    entry = agg.apply(event_type, _details(envelope), envelope.timestamp)
    await store.append_history(session, order_id, entry)
    await store.update_status(session, agg)

    if agg.status != previous:
        logger.info(
            "Order %s: %s → %s (%s)",
            order_id, previous.value, agg.status.value, event_type.value,
        )
    return entry
