"""
Order Service — 注文ストア

orders テーブルに現在の状態を、order_history テーブルに適用済みイベントを追記する。
状態の更新と履歴の追記は、呼び出し側のトランザクション内で一緒にコミットされる。
"""

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.database import dumps, loads
from saga_services.shared.errors import OrderAlreadyExists

from .aggregate import OrderAggregate


async def insert_order(session: AsyncSession, agg: OrderAggregate) -> None:
    try:
        await session.execute(
            text("""
                INSERT INTO orders
                    (order_id, items, total, status, correlation_id, created_at, updated_at)
                VALUES
                    (:order_id, :items, :total, :status, :correlation_id, :now, :now)
            """),
            {
                "order_id": agg.id,
                "items": dumps(agg.items),
                "total": agg.total,
                "status": agg.status.value,
                "correlation_id": agg.correlation_id,
                "now": agg.created_at,
            },
        )
    except IntegrityError as exc:
        await session.rollback()
        raise OrderAlreadyExists(f"Order {agg.id} already exists") from exc


async def load_history(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT type, at, details FROM order_history
            WHERE order_id = :order_id
            ORDER BY seq ASC
        """),
        {"order_id": order_id},
    )
    return [
        {"type": row.type, "at": row.at, "details": loads(row.details) or {}}
        for row in result.fetchall()
    ]


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    """注文を履歴つきで読み出す。存在しなければ None。"""
    result = await session.execute(
        text("SELECT * FROM orders WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if row is None:
        return None
    history = await load_history(session, order_id)
    return OrderAggregate.from_row(row, loads(row.items), history)


async def append_history(session: AsyncSession, order_id: str, entry: dict) -> int:
    """履歴の末尾に 1 件追記し、採番した seq を返す。"""
    result = await session.execute(
        text("""
            SELECT COALESCE(MAX(seq), 0) FROM order_history
            WHERE order_id = :order_id
        """),
        {"order_id": order_id},
    )
    seq = result.scalar_one() + 1
    await session.execute(
        text("""
            INSERT INTO order_history (order_id, seq, type, at, details)
            VALUES (:order_id, :seq, :type, :at, :details)
        """),
        {
            "order_id": order_id,
            "seq": seq,
            "type": entry["type"],
            "at": entry["at"],
            "details": dumps(entry["details"]),
        },
    )
    return seq


async def update_status(session: AsyncSession, agg: OrderAggregate) -> None:
    await session.execute(
        text("""
            UPDATE orders
            SET status = :status, updated_at = :now
            WHERE order_id = :order_id
        """),
        {"order_id": agg.id, "status": agg.status.value, "now": agg.updated_at},
    )


async def list_orders(session: AsyncSession, limit: int = 100) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT order_id, total, status, created_at, updated_at
            FROM orders
            ORDER BY created_at DESC
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [
        {
            "orderId": row.order_id,
            "total": float(row.total),
            "status": row.status,
            "createdAt": row.created_at,
            "updatedAt": row.updated_at,
        }
        for row in result.fetchall()
    ]
