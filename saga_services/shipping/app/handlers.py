"""
Shipping Service — Saga ステップハンドラ

  PaymentAuthorized                     → 出荷を判断
       成功 → OrderShipped
       失敗 → ShippingFailed + CompensationRequested{refundPayment} (同一トランザクション)
  CompensationRequested{refundPayment}  → FAILED の出荷を CANCELLED にする
  PaymentRefunded                       → 同上
  RetryRequested{shipping}              → FAILED の出荷をやり直す（再び失敗すれば返金要求も再び出す）

返金が決まった注文 (CANCELLED) は、再試行されても出荷しない。
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.decisions import (
    Failed,
    Strategy,
    Succeeded,
    random_strategy,
    random_token,
)
from saga_services.shared.events import (
    CompensationRequested,
    EventEnvelope,
    EventType,
    OrderShipped,
    PaymentAuthorized,
    PaymentRefunded,
    RetryRequested,
    ShippingFailed,
    parse_payload,
)
from saga_services.shared.outbox import emit

from .store import ShipmentStatus, get_shipment, save_shipment

logger = logging.getLogger(__name__)

TOPICS = [
    EventType.PAYMENT_AUTHORIZED.topic,
    EventType.PAYMENT_REFUNDED.topic,
    EventType.RETRY_REQUESTED.topic,
    EventType.COMPENSATION_REQUESTED.topic,
]

NOT_SHIPPABLE = frozenset({ShipmentStatus.SHIPPED, ShipmentStatus.CANCELLED})

SHIP_SUCCESS_RATE = 0.95
DEFAULT_CARRIER = "UPS"


def default_strategy() -> Strategy:
    return random_strategy(
        SHIP_SUCCESS_RATE,
        "Carrier unavailable",
        details=lambda rng: {
            "carrier": DEFAULT_CARRIER,
            "trackingId": f"1Z{random_token(rng, 12).upper()}",
        },
    )


class ShippingStep:
    def __init__(self, decide: Strategy | None = None) -> None:
        self.decide = decide or default_strategy()

    async def handle(self, session: AsyncSession, envelope: EventEnvelope) -> EventEnvelope | None:
        match envelope.event_type:
            case EventType.PAYMENT_AUTHORIZED:
                authorized: PaymentAuthorized = parse_payload(envelope)
                shipment = await get_shipment(session, authorized.order_id)
                if shipment is not None and shipment.status in NOT_SHIPPABLE:
                    logger.info(
                        "Shipment for %s already %s, skipping",
                        authorized.order_id, shipment.status.value,
                    )
                    return None
                return await self._ship(session, envelope, authorized.order_id)
            case EventType.RETRY_REQUESTED:
                retry: RetryRequested = parse_payload(envelope)
                if retry.step != "shipping":
                    return None
                shipment = await get_shipment(session, retry.order_id)
                if shipment is None or shipment.status != ShipmentStatus.FAILED:
                    logger.info("No failed shipment for %s, skipping retry", retry.order_id)
                    return None
                logger.info("Retrying shipment for %s", retry.order_id)
                return await self._ship(session, envelope, retry.order_id)
            case EventType.COMPENSATION_REQUESTED:
                compensation: CompensationRequested = parse_payload(envelope)
                if compensation.action == "refundPayment":
                    await self._cancel(session, compensation.order_id, "Refund requested")
                return None
            case EventType.PAYMENT_REFUNDED:
                refunded: PaymentRefunded = parse_payload(envelope)
                await self._cancel(session, refunded.order_id, "Payment refunded")
                return None
            case _:
                return None

    async def _ship(
        self, session: AsyncSession, envelope: EventEnvelope, order_id: str
    ) -> EventEnvelope:
        decision = self.decide(order_id)
        match decision:
            case Succeeded(details=details):
                carrier = details.get("carrier", DEFAULT_CARRIER)
                tracking_id = details.get("trackingId") or f"1Z{order_id[:12].upper()}"
                await save_shipment(
                    session,
                    order_id,
                    ShipmentStatus.SHIPPED,
                    carrier=carrier,
                    tracking_id=tracking_id,
                )
                logger.info("Order %s shipped via %s (%s)", order_id, carrier, tracking_id)
                return await emit(
                    session,
                    EventType.ORDER_SHIPPED,
                    OrderShipped(order_id=order_id, carrier=carrier, tracking_id=tracking_id),
                    cause=envelope,
                )
            case Failed(reason=reason):
                await save_shipment(session, order_id, ShipmentStatus.FAILED, reason=reason)
                logger.info("Shipping failed for %s: %s", order_id, reason)
                failed = await emit(
                    session,
                    EventType.SHIPPING_FAILED,
                    ShippingFailed(order_id=order_id, reason=reason),
                    cause=envelope,
                )
                await emit(
                    session,
                    EventType.COMPENSATION_REQUESTED,
                    CompensationRequested(order_id=order_id, action="refundPayment"),
                    cause=envelope,
                    causation_id=failed.event_id,
                )
                return failed

    async def _cancel(self, session: AsyncSession, order_id: str, reason: str) -> None:
        shipment = await get_shipment(session, order_id)
        if shipment is None or shipment.status != ShipmentStatus.FAILED:
            status = shipment.status.value if shipment else "missing"
            logger.info("Shipment for %s is %s, nothing to cancel", order_id, status)
            return
        await save_shipment(session, order_id, ShipmentStatus.CANCELLED, reason=reason)
        logger.info("Shipment for %s cancelled: %s", order_id, reason)
