"""
Payment Service — Saga ステップハンドラ

  OrderCreated                          → 注文金額で PENDING の支払いを記録
  InventoryReserved                     → 在庫確保を記録し、オーソリを判断
       成功 → PaymentAuthorized
       失敗 → PaymentFailed + CompensationRequested{releaseInventory} (同一トランザクション)
  InventoryReleased                     → 在庫確保の記録を外す
  RetryRequested{payment}               → 在庫が確保されている PENDING / FAILED の支払いだけ、オーソリをやり直す
  CompensationRequested{refundPayment}  → AUTHORIZED の支払いを返金し PaymentRefunded を発行

補償リクエストの causationId は、同時にステージングした PaymentFailed の eventId。
支払い失敗は在庫解放を要求するので、その時点で在庫確保の記録も外す。
"""

import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.decisions import (
    Failed,
    Strategy,
    Succeeded,
    random_strategy,
    random_token,
)
from saga_services.shared.errors import OrderNotFound
from saga_services.shared.events import (
    CompensationRequested,
    EventEnvelope,
    EventType,
    InventoryReleased,
    InventoryReserved,
    OrderCreated,
    PaymentAuthorized,
    PaymentFailed,
    PaymentRefunded,
    RetryRequested,
    parse_payload,
)
from saga_services.shared.outbox import emit

from . import store
from .store import PaymentStatus

logger = logging.getLogger(__name__)

TOPICS = [
    EventType.ORDER_CREATED.topic,
    EventType.INVENTORY_RESERVED.topic,
    EventType.INVENTORY_RELEASED.topic,
    EventType.RETRY_REQUESTED.topic,
    EventType.COMPENSATION_REQUESTED.topic,
]

AUTHORIZE_SUCCESS_RATE = 0.9

AUTHORIZABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.FAILED})


def default_strategy() -> Strategy:
    return random_strategy(
        AUTHORIZE_SUCCESS_RATE,
        "Card declined",
        details=lambda rng: {"authId": f"auth_{random_token(rng)}"},
    )


class PaymentStep:
    def __init__(self, decide: Strategy | None = None) -> None:
        self.decide = decide or default_strategy()

    async def handle(self, session: AsyncSession, envelope: EventEnvelope) -> EventEnvelope | None:
        match envelope.event_type:
            case EventType.ORDER_CREATED:
                created: OrderCreated = parse_payload(envelope)
                if await store.create_pending(session, created.order_id, created.total):
                    logger.info("Payment of %.2f pending for %s", created.total, created.order_id)
                return None
            case EventType.INVENTORY_RESERVED:
                reserved: InventoryReserved = parse_payload(envelope)
                return await self._on_inventory_reserved(session, envelope, reserved.order_id)
            case EventType.INVENTORY_RELEASED:
                released: InventoryReleased = parse_payload(envelope)
                if await store.get_payment(session, released.order_id) is not None:
                    await store.set_inventory_reserved(session, released.order_id, False)
                return None
            case EventType.RETRY_REQUESTED:
                retry: RetryRequested = parse_payload(envelope)
                if retry.step != "payment":
                    return None
                return await self._on_retry(session, envelope, retry.order_id)
            case EventType.COMPENSATION_REQUESTED:
                compensation: CompensationRequested = parse_payload(envelope)
                if compensation.action != "refundPayment":
                    return None
                return await self._on_refund(session, envelope, compensation.order_id)
            case _:
                return None

    async def _on_inventory_reserved(
        self, session: AsyncSession, envelope: EventEnvelope, order_id: str
    ) -> EventEnvelope | None:
        payment = await store.get_payment(session, order_id)
        if payment is None:
            # OrderCreated を処理する前に届いた。Dead Letter から運用で再試行する
            raise OrderNotFound(f"No payment recorded for order {order_id}")
        await store.set_inventory_reserved(session, order_id, True)
        if payment.status not in AUTHORIZABLE:
            logger.info("Payment for %s already %s, skipping", order_id, payment.status.value)
            return None
        return await self._authorize(session, envelope, payment)

    async def _on_retry(
        self, session: AsyncSession, envelope: EventEnvelope, order_id: str
    ) -> EventEnvelope | None:
        payment = await store.get_payment(session, order_id)
        if payment is None or payment.status not in AUTHORIZABLE:
            logger.info("No retryable payment for %s, skipping retry", order_id)
            return None
        if not payment.inventory_reserved:
            logger.info("Inventory not reserved for %s, skipping payment retry", order_id)
            return None
        logger.info("Retrying authorization for %s", order_id)
        return await self._authorize(session, envelope, payment)

    async def _authorize(
        self, session: AsyncSession, envelope: EventEnvelope, payment: store.Payment
    ) -> EventEnvelope:
        decision = self.decide(payment.order_id, payment.amount)
        match decision:
            case Succeeded(details=details):
                auth_id = details.get("authId") or f"auth_{uuid4().hex[:10]}"
                await store.mark_authorized(session, payment.order_id, auth_id)
                logger.info("Payment authorized for %s (%s)", payment.order_id, auth_id)
                return await emit(
                    session,
                    EventType.PAYMENT_AUTHORIZED,
                    PaymentAuthorized(
                        order_id=payment.order_id, amount=payment.amount, auth_id=auth_id
                    ),
                    cause=envelope,
                )
            case Failed(reason=reason):
                await store.mark_failed(session, payment.order_id, reason)
                logger.info("Payment failed for %s: %s", payment.order_id, reason)
                failed = await emit(
                    session,
                    EventType.PAYMENT_FAILED,
                    PaymentFailed(order_id=payment.order_id, reason=reason),
                    cause=envelope,
                )
                await emit(
                    session,
                    EventType.COMPENSATION_REQUESTED,
                    CompensationRequested(
                        order_id=payment.order_id, action="releaseInventory"
                    ),
                    cause=envelope,
                    causation_id=failed.event_id,
                )
                return failed

    async def _on_refund(
        self, session: AsyncSession, envelope: EventEnvelope, order_id: str
    ) -> EventEnvelope | None:
        payment = await store.get_payment(session, order_id)
        if payment is None or payment.status != PaymentStatus.AUTHORIZED:
            status = payment.status.value if payment else "missing"
            logger.info("Payment for %s is %s, skipping refund", order_id, status)
            return None
        refund_id = f"refund_{uuid4().hex[:10]}"
        await store.mark_refunded(session, order_id, refund_id)
        logger.info("Payment refunded for %s (%s)", order_id, refund_id)
        return await emit(
            session,
            EventType.PAYMENT_REFUNDED,
            PaymentRefunded(order_id=order_id, amount=payment.amount, refund_id=refund_id),
            cause=envelope,
        )
