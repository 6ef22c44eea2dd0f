"""
Shipping Service — 出荷ストア
"""

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.events import now_iso


class ShipmentStatus(str, Enum):
    SHIPPED = "SHIPPED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class Shipment:
    order_id: str
    status: ShipmentStatus
    carrier: str | None
    tracking_id: str | None
    reason: str | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "status": self.status.value,
            "carrier": self.carrier,
            "trackingId": self.tracking_id,
            "reason": self.reason,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


async def get_shipment(session: AsyncSession, order_id: str) -> Shipment | None:
    result = await session.execute(
        text("SELECT * FROM shipments WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if row is None:
        return None
    return Shipment(
        order_id=row.order_id,
        status=ShipmentStatus(row.status),
        carrier=row.carrier,
        tracking_id=row.tracking_id,
        reason=row.reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def save_shipment(
    session: AsyncSession,
    order_id: str,
    status: ShipmentStatus,
    *,
    carrier: str | None = None,
    tracking_id: str | None = None,
    reason: str | None = None,
) -> None:
    """出荷状態を UPSERT する（created_at は初回のみ）。"""
    await session.execute(
        text("""
            INSERT INTO shipments
                (order_id, status, carrier, tracking_id, reason, created_at, updated_at)
            VALUES
                (:order_id, :status, :carrier, :tracking_id, :reason, :now, :now)
            ON CONFLICT (order_id) DO UPDATE SET
                status = excluded.status,
                carrier = excluded.carrier,
                tracking_id = excluded.tracking_id,
                reason = excluded.reason,
                updated_at = excluded.updated_at
        """),
        {
            "order_id": order_id,
            "status": status.value,
            "carrier": carrier,
            "tracking_id": tracking_id,
            "reason": reason,
            "now": now_iso(),
        },
    )
