"""
Inventory Service — 引き当てストア
"""

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.database import dumps, loads
from saga_services.shared.events import now_iso


class ReservationStatus(str, Enum):
    RESERVED = "RESERVED"
    FAILED = "FAILED"
    RELEASED = "RELEASED"


@dataclass(frozen=True)
class Reservation:
    order_id: str
    items: list[dict]
    status: ReservationStatus
    reason: str | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "items": self.items,
            "status": self.status.value,
            "reason": self.reason,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


async def get_reservation(session: AsyncSession, order_id: str) -> Reservation | None:
    result = await session.execute(
        text("SELECT * FROM reservations WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if row is None:
        return None
    return Reservation(
        order_id=row.order_id,
        items=loads(row.items),
        status=ReservationStatus(row.status),
        reason=row.reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def save_reservation(
    session: AsyncSession,
    order_id: str,
    items: list[dict],
    status: ReservationStatus,
    reason: str | None = None,
) -> None:
    """引き当て状態を UPSERT する（created_at は初回のみ）。"""
    await session.execute(
        text("""
            INSERT INTO reservations
                (order_id, items, status, reason, created_at, updated_at)
            VALUES
                (:order_id, :items, :status, :reason, :now, :now)
            ON CONFLICT (order_id) DO UPDATE SET
                items = excluded.items,
                status = excluded.status,
                reason = excluded.reason,
                updated_at = excluded.updated_at
        """),
        {
            "order_id": order_id,
            "items": dumps(items),
            "status": status.value,
            "reason": reason,
            "now": now_iso(),
        },
    )
