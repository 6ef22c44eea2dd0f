"""
Inventory Service — Saga ステップハンドラ

  OrderCreated                         → 引き当てを判断し Reserved / Failed のどちらか 1 つを発行
  RetryRequested{inventory}            → FAILED / RELEASED の引き当てをやり直す
  CompensationRequested{releaseInventory} → RESERVED の引き当てを解放し InventoryReleased を発行

対応するローカル状態が無い再試行・補償はログを残してスキップする。
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.decisions import Failed, Strategy, Succeeded, random_strategy
from saga_services.shared.events import (
    CompensationRequested,
    EventEnvelope,
    EventType,
    InventoryFailed,
    InventoryReleased,
    InventoryReserved,
    LineItem,
    OrderCreated,
    RetryRequested,
    parse_payload,
)
from saga_services.shared.outbox import emit

from .store import ReservationStatus, get_reservation, save_reservation

logger = logging.getLogger(__name__)

TOPICS = [
    EventType.ORDER_CREATED.topic,
    EventType.RETRY_REQUESTED.topic,
    EventType.COMPENSATION_REQUESTED.topic,
]

RESERVE_SUCCESS_RATE = 0.85

RETRYABLE = frozenset({ReservationStatus.FAILED, ReservationStatus.RELEASED})


class InventoryStep:
    """
    在庫引き当てのステップ

    decide(items) は Succeeded か Failed を返す。テストでは結果を固定した関数を渡す。
    """

    def __init__(self, decide: Strategy | None = None) -> None:
        self.decide = decide or random_strategy(RESERVE_SUCCESS_RATE, "Insufficient stock")

    async def handle(self, session: AsyncSession, envelope: EventEnvelope) -> EventEnvelope | None:
        match envelope.event_type:
            case EventType.ORDER_CREATED:
                created: OrderCreated = parse_payload(envelope)
                return await self._on_order_created(session, envelope, created)
            case EventType.RETRY_REQUESTED:
                retry: RetryRequested = parse_payload(envelope)
                if retry.step != "inventory":
                    return None
                return await self._on_retry(session, envelope, retry.order_id)
            case EventType.COMPENSATION_REQUESTED:
                compensation: CompensationRequested = parse_payload(envelope)
                if compensation.action != "releaseInventory":
                    return None
                return await self._on_release(session, envelope, compensation.order_id)
            case _:
                return None

    async def _on_order_created(
        self, session: AsyncSession, envelope: EventEnvelope, created: OrderCreated
    ) -> EventEnvelope | None:
        existing = await get_reservation(session, created.order_id)
        if existing is not None:
            logger.info(
                "Reservation for %s already %s, skipping",
                created.order_id, existing.status.value,
            )
            return None
        items = [item.to_wire() for item in created.items]
        return await self._reserve(session, envelope, created.order_id, items)

    async def _on_retry(
        self, session: AsyncSession, envelope: EventEnvelope, order_id: str
    ) -> EventEnvelope | None:
        reservation = await get_reservation(session, order_id)
        if reservation is None or reservation.status not in RETRYABLE:
            logger.info("No retryable reservation for %s, skipping retry", order_id)
            return None
        logger.info("Retrying reservation for %s", order_id)
        return await self._reserve(session, envelope, order_id, reservation.items)

    async def _reserve(
        self,
        session: AsyncSession,
        envelope: EventEnvelope,
        order_id: str,
        items: list[dict],
    ) -> EventEnvelope:
        decision = self.decide(items)
        match decision:
            case Succeeded():
                await save_reservation(session, order_id, items, ReservationStatus.RESERVED)
                logger.info("Inventory reserved for %s", order_id)
                return await emit(
                    session,
                    EventType.INVENTORY_RESERVED,
                    InventoryReserved(
                        order_id=order_id,
                        reserved_items=[LineItem.model_validate(item) for item in items],
                    ),
                    cause=envelope,
                )
            case Failed(reason=reason):
                await save_reservation(
                    session, order_id, items, ReservationStatus.FAILED, reason
                )
                logger.info("Inventory reservation failed for %s: %s", order_id, reason)
                return await emit(
                    session,
                    EventType.INVENTORY_FAILED,
                    InventoryFailed(order_id=order_id, reason=reason),
                    cause=envelope,
                )

    async def _on_release(
        self, session: AsyncSession, envelope: EventEnvelope, order_id: str
    ) -> EventEnvelope | None:
        reservation = await get_reservation(session, order_id)
        if reservation is None or reservation.status != ReservationStatus.RESERVED:
            logger.info("Nothing reserved for %s, skipping release", order_id)
            return None
        await save_reservation(
            session, order_id, reservation.items, ReservationStatus.RELEASED, "released"
        )
        logger.info("Inventory released for %s", order_id)
        return await emit(
            session,
            EventType.INVENTORY_RELEASED,
            InventoryReleased(
                order_id=order_id,
                released_items=[LineItem.model_validate(item) for item in reservation.items],
            ),
            cause=envelope,
        )
