"""
Read Model Service — イベント投影 (Projection)

全サービスのドメインイベントを注文ごとの投影に畳み込む。

  1. イベントの type から固定表で status ラベルを決める
  2. order_projection を UPSERT（created_at は初回 INSERT 時のみ）
  3. order_timeline の末尾に {type, at, details} を追記
  4. ライブ購読者に配る更新 {type, at, details, status} を返す

購読者への配信はトランザクションのコミット後 (コンシューマーの on_committed) に行う。
ロールバックされた更新を購読者が見ることはない。
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.database import dumps
from saga_services.shared.events import EventEnvelope, EventType

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "UNKNOWN"

# None はタイムラインにだけ残し、status は変えない
STATUS_BY_TYPE: dict[EventType, str | None] = {
    EventType.ORDER_CREATED: "CREATED",
    EventType.INVENTORY_RESERVED: "INVENTORY_RESERVED",
    EventType.INVENTORY_FAILED: "INVENTORY_FAILED",
    EventType.INVENTORY_RELEASED: None,
    EventType.PAYMENT_AUTHORIZED: "PAYMENT_AUTHORIZED",
    EventType.PAYMENT_FAILED: "PAYMENT_FAILED",
    EventType.ORDER_SHIPPED: "SHIPPED",
    EventType.SHIPPING_FAILED: "SHIPPING_FAILED",
    EventType.PAYMENT_REFUNDED: "REFUNDED",
    EventType.RETRY_REQUESTED: None,
    EventType.COMPENSATION_REQUESTED: None,
}

PROJECTED_TOPICS = [event_type.topic for event_type in STATUS_BY_TYPE]


@dataclass(frozen=True)
class ProjectionUpdate:
    order_id: str
    data: dict[str, Any]


class OrderProjector:
    async def project(
        self, session: AsyncSession, envelope: EventEnvelope
    ) -> ProjectionUpdate | None:
        event_type = envelope.event_type
        if event_type not in STATUS_BY_TYPE:
            logger.debug("Projector ignores %s", envelope.type)
            return None

        order_id = envelope.payload.get("orderId") or envelope.key
        status = STATUS_BY_TYPE[event_type]
        at = envelope.timestamp
        details = {k: v for k, v in envelope.payload.items() if k != "orderId"}

        # 1. Projection (UPSERT)
        if status is None:
            await session.execute(
                text("""
                    INSERT INTO order_projection
                        (order_id, current_status, created_at, updated_at)
                    VALUES
                        (:order_id, :unknown, :at, :at)
                    ON CONFLICT (order_id) DO UPDATE SET
                        updated_at = excluded.updated_at
                """),
                {"order_id": order_id, "unknown": UNKNOWN_STATUS, "at": at},
            )
        else:
            await session.execute(
                text("""
                    INSERT INTO order_projection
                        (order_id, current_status, created_at, updated_at)
                    VALUES
                        (:order_id, :status, :at, :at)
                    ON CONFLICT (order_id) DO UPDATE SET
                        current_status = excluded.current_status,
                        updated_at = excluded.updated_at
                """),
                {"order_id": order_id, "status": status, "at": at},
            )

        # 2. Timeline (追記)
        result = await session.execute(
            text("""
                SELECT COALESCE(MAX(seq), 0) FROM order_timeline
                WHERE order_id = :order_id
            """),
            {"order_id": order_id},
        )
        seq = result.scalar_one() + 1
        await session.execute(
            text("""
                INSERT INTO order_timeline (order_id, seq, type, at, details)
                VALUES (:order_id, :seq, :type, :at, :details)
            """),
            {
                "order_id": order_id,
                "seq": seq,
                "type": envelope.type,
                "at": at,
                "details": dumps(details),
            },
        )

        # 3. 配信用の現在 status
        if status is None:
            result = await session.execute(
                text("SELECT current_status FROM order_projection WHERE order_id = :order_id"),
                {"order_id": order_id},
            )
            status = result.scalar_one()

        logger.info("Projected %s for order %s (status=%s)", envelope.type, order_id, status)
        return ProjectionUpdate(
            order_id=order_id,
            data={"type": envelope.type, "at": at, "details": details, "status": status},
        )
