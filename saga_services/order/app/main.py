"""
Order Service — FastAPI エントリーポイント

注文作成 (Saga の起点) とオペレーターコマンドの受付、注文状態の参照を提供する。
バックグラウンドでは下流サービスのイベントを購読して注文集約に適用し、
Outbox のディスパッチャがステージングされたイベントを送信する。

起動: uvicorn saga_services.order.app.main:create_app --factory
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from saga_services.shared.auth import operator_name, require_operator
from saga_services.shared.broker import Broker
from saga_services.shared.config import Settings, configure_logging
from saga_services.shared.errors import (
    EventValidationError,
    OrderAlreadyExists,
    OrderNotFound,
)
from saga_services.shared.runtime import ServiceRuntime, get_runtime
from saga_services.shared.web import create_service_app

from . import commands, handlers, queries
from .schema import ORDER_TABLES

router = APIRouter()


# ── Request Models ───────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineItemRequest(CamelModel):
    sku: str
    qty: int


class CreateOrderRequest(CamelModel):
    order_id: str | None = None
    items: list[LineItemRequest]
    total: float


class RetryRequest(CamelModel):
    step: Literal["inventory", "payment", "shipping"]


class CompensateRequest(CamelModel):
    action: Literal["releaseInventory", "refundPayment"]


# ── Command Endpoints ────────────────────────────

@router.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest, runtime: ServiceRuntime = Depends(get_runtime)
):
    """注文作成コマンド（Saga を開始する）"""
    items = [item.model_dump() for item in req.items]
    async with runtime.session_factory() as session:
        try:
            agg, envelope = await commands.create_order(
                session, items, req.total, req.order_id
            )
        except EventValidationError as exc:
            raise HTTPException(400, str(exc)) from exc
        except OrderAlreadyExists as exc:
            raise HTTPException(409, str(exc)) from exc
    return {
        "orderId": agg.id,
        "status": agg.status.value,
        "correlationId": agg.correlation_id,
        "eventId": envelope.event_id,
    }


@router.post("/admin/retry/{order_id}", status_code=202)
async def retry_step(
    order_id: str,
    req: RetryRequest,
    runtime: ServiceRuntime = Depends(get_runtime),
    claims: dict = Depends(require_operator),
):
    """失敗したステップの再試行を要求する (要オペレーター認証)"""
    async with runtime.session_factory() as session:
        try:
            envelope = await commands.request_retry(
                session, order_id, req.step, operator_name(claims)
            )
        except OrderNotFound as exc:
            raise HTTPException(404, str(exc)) from exc
    return {"orderId": order_id, "step": req.step, "eventId": envelope.event_id}


@router.post("/admin/compensate/{order_id}", status_code=202)
async def compensate(
    order_id: str,
    req: CompensateRequest,
    runtime: ServiceRuntime = Depends(get_runtime),
    claims: dict = Depends(require_operator),
):
    """補償（在庫解放・返金）を要求する (要オペレーター認証)"""
    async with runtime.session_factory() as session:
        try:
            envelope = await commands.request_compensation(
                session, order_id, req.action, operator_name(claims)
            )
        except OrderNotFound as exc:
            raise HTTPException(404, str(exc)) from exc
    return {"orderId": order_id, "action": req.action, "eventId": envelope.event_id}


# ── Query Endpoints ──────────────────────────────

@router.get("/orders")
async def list_orders(limit: int = 100, runtime: ServiceRuntime = Depends(get_runtime)):
    async with runtime.session_factory() as session:
        return await queries.list_orders(session, limit)


@router.get("/orders/{order_id}")
async def get_order(order_id: str, runtime: ServiceRuntime = Depends(get_runtime)):
    """注文と適用済みイベントの履歴を返す"""
    async with runtime.session_factory() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@router.get("/outbox/stats")
async def outbox_stats(runtime: ServiceRuntime = Depends(get_runtime)):
    """Outbox の未送信件数と再試行状況"""
    async with runtime.session_factory() as session:
        return await queries.outbox_stats(session)


# ── 組み立て ─────────────────────────────────────

def build_runtime(settings: Settings, broker: Broker | None = None) -> ServiceRuntime:
    runtime = ServiceRuntime(settings, schema=ORDER_TABLES, broker=broker)
    runtime.add_consumer(handlers.TOPICS, handlers.handle)
    return runtime


def create_app(runtime: ServiceRuntime | None = None):
    if runtime is None:
        settings = Settings.from_env("order-service")
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)
    return create_service_app("Order Service", runtime, [router])
