"""
Order Service — クエリ

注文サービス自身が持つ状態 (集約と履歴) の参照。
サービスを横断した読み取りは Read Model Service の投影を使う。
"""

from sqlalchemy.ext.asyncio import AsyncSession

from saga_services.shared import outbox

from . import store


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    agg = await store.load_order(session, order_id)
    return agg.to_dict() if agg else None


async def list_orders(session: AsyncSession, limit: int = 100) -> list[dict]:
    return await store.list_orders(session, limit)


async def outbox_stats(session: AsyncSession) -> dict:
    return await outbox.stats(session)
