"""
Read Model Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared.database import loads


async def get_timeline(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT type, at, details FROM order_timeline
            WHERE order_id = :order_id
            ORDER BY seq ASC
        """),
        {"order_id": order_id},
    )
    return [
        {"type": row.type, "at": row.at, "details": loads(row.details) or {}}
        for row in result.fetchall()
    ]


async def get_projection(session: AsyncSession, order_id: str) -> dict | None:
    """注文の投影をタイムライン全体つきで返す"""
    result = await session.execute(
        text("SELECT * FROM order_projection WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "orderId": row.order_id,
        "currentStatus": row.current_status,
        "timeline": await get_timeline(session, order_id),
        "createdAt": row.created_at,
        "updatedAt": row.updated_at,
    }


async def list_projections(
    session: AsyncSession, status: str | None = None, limit: int = 100
) -> list[dict]:
    """投影の一覧 (更新の新しい順)。status で絞り込める。"""
    if status is None:
        result = await session.execute(
            text("""
                SELECT * FROM order_projection
                ORDER BY updated_at DESC
                LIMIT :limit
            """),
            {"limit": limit},
        )
    else:
        result = await session.execute(
            text("""
                SELECT * FROM order_projection
                WHERE current_status = :status
                ORDER BY updated_at DESC
                LIMIT :limit
            """),
            {"status": status, "limit": limit},
        )
    return [
        {
            "orderId": row.order_id,
            "currentStatus": row.current_status,
            "createdAt": row.created_at,
            "updatedAt": row.updated_at,
        }
        for row in result.fetchall()
    ]
