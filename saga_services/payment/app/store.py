"""
Payment Service — 支払いストア
"""

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.events import now_iso


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


@dataclass(frozen=True)
class Payment:
    order_id: str
    amount: float
    status: PaymentStatus
    inventory_reserved: bool
    auth_id: str | None
    refund_id: str | None
    reason: str | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "amount": self.amount,
            "status": self.status.value,
            "inventoryReserved": self.inventory_reserved,
            "authId": self.auth_id,
            "refundId": self.refund_id,
            "reason": self.reason,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


async def get_payment(session: AsyncSession, order_id: str) -> Payment | None:
    result = await session.execute(
        text("SELECT * FROM payments WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if row is None:
        return None
    return Payment(
        order_id=row.order_id,
        amount=float(row.amount),
        status=PaymentStatus(row.status),
        inventory_reserved=bool(row.inventory_reserved),
        auth_id=row.auth_id,
        refund_id=row.refund_id,
        reason=row.reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def create_pending(session: AsyncSession, order_id: str, amount: float) -> bool:
    """PENDING の支払いを記録する。既にあれば何もせず False を返す。"""
    now = now_iso()
    result = await session.execute(
        text("""
            INSERT INTO payments (order_id, amount, status, created_at, updated_at)
            VALUES (:order_id, :amount, :status, :now, :now)
            ON CONFLICT (order_id) DO NOTHING
        """),
        {
            "order_id": order_id,
            "amount": amount,
            "status": PaymentStatus.PENDING.value,
            "now": now,
        },
    )
    return result.rowcount == 1


async def mark_authorized(session: AsyncSession, order_id: str, auth_id: str) -> None:
    await session.execute(
        text("""
            UPDATE payments
            SET status = :status, auth_id = :auth_id, reason = NULL, updated_at = :now
            WHERE order_id = :order_id
        """),
        {
            "order_id": order_id,
            "status": PaymentStatus.AUTHORIZED.value,
            "auth_id": auth_id,
            "now": now_iso(),
        },
    )


async def mark_failed(session: AsyncSession, order_id: str, reason: str) -> None:
    await session.execute(
        text("""
            UPDATE payments
            SET status = :status, reason = :reason, inventory_reserved = 0, updated_at = :now
            WHERE order_id = :order_id
        """),
        {
            "order_id": order_id,
            "status": PaymentStatus.FAILED.value,
            "reason": reason,
            "now": now_iso(),
        },
    )


async def mark_refunded(session: AsyncSession, order_id: str, refund_id: str) -> None:
    await session.execute(
        text("""
            UPDATE payments
            SET status = :status, refund_id = :refund_id, updated_at = :now
            WHERE order_id = :order_id
        """),
        {
            "order_id": order_id,
            "status": PaymentStatus.REFUNDED.value,
            "refund_id": refund_id,
            "now": now_iso(),
        },
    )


async def set_inventory_reserved(session: AsyncSession, order_id: str, reserved: bool) -> None:
    await session.execute(
        text("""
            UPDATE payments
            SET inventory_reserved = :reserved, updated_at = :now
            WHERE order_id = :order_id
        """),
        {"order_id": order_id, "reserved": 1 if reserved else 0, "now": now_iso()},
    )
