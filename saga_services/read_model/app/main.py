"""
Read Model Service — FastAPI エントリーポイント

全サービスのドメインイベントを購読して注文ごとの投影を作り、
Query API とライブ更新ストリーム (Server-Sent Events) を提供する。

┌───────────┐  events   ┌──────────────────┐  commit 後  ┌──────────────────┐
│ Broker    │ ────────▶ │ OrderProjector   │ ──────────▶ │ SubscriptionHub  │
└───────────┘           └────────┬─────────┘             └────────┬─────────┘
                                 │                                │ SSE
                        ┌────────▼─────────┐              GET /orders/{id}/stream
                        │ order_projection │
                        │ order_timeline   │
                        └──────────────────┘

起動: uvicorn saga_services.read_model.app.main:create_app --factory
"""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from saga_services.shared.broker import Broker
from saga_services.shared.config import Settings, configure_logging
from saga_services.shared.events import EventEnvelope
from saga_services.shared.runtime import ServiceRuntime, get_runtime
from saga_services.shared.web import create_service_app

from . import queries
from .projections import PROJECTED_TOPICS, OrderProjector, ProjectionUpdate
from .schema import READ_MODEL_TABLES
from .subscriptions import SubscriptionHub

KEEPALIVE_SECONDS = 15.0

router = APIRouter()


def get_hub(request: Request) -> SubscriptionHub:
    return request.app.state.hub


async def event_stream(
    hub: SubscriptionHub,
    order_id: str,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """
    SSE のフレームを生成する。

    接続時点からの更新だけを流す（過去のタイムラインは GET /orders/{id} で取得する）。
    """
    async with hub.subscribe(order_id) as queue:
        yield ": connected\n\n"
        while not await is_disconnected():
            try:
                update = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"data: {json.dumps(update)}\n\n"


# ── Query Endpoints ──────────────────────────────

@router.get("/orders")
async def list_orders(
    status: str | None = None,
    limit: int = 100,
    runtime: ServiceRuntime = Depends(get_runtime),
):
    """投影の一覧 (status で絞り込み)"""
    async with runtime.session_factory() as session:
        return await queries.list_projections(session, status, limit)


@router.get("/orders/{order_id}")
async def get_order(order_id: str, runtime: ServiceRuntime = Depends(get_runtime)):
    """注文の投影とタイムライン"""
    async with runtime.session_factory() as session:
        projection = await queries.get_projection(session, order_id)
    if not projection:
        raise HTTPException(404, "Order not found")
    return projection


@router.get("/orders/{order_id}/stream")
async def stream_order(
    order_id: str,
    request: Request,
    hub: SubscriptionHub = Depends(get_hub),
):
    """注文のライブ更新を Server-Sent Events で流す"""
    return StreamingResponse(
        event_stream(hub, order_id, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# ── 組み立て ─────────────────────────────────────

def build_runtime(
    settings: Settings,
    hub: SubscriptionHub,
    broker: Broker | None = None,
) -> ServiceRuntime:
    projector = OrderProjector()

    async def push_to_subscribers(
        envelope: EventEnvelope, update: ProjectionUpdate | None
    ) -> None:
        if update is not None:
            hub.publish(update.order_id, update.data)

    runtime = ServiceRuntime(settings, schema=READ_MODEL_TABLES, broker=broker)
    runtime.add_consumer(
        PROJECTED_TOPICS,
        projector.project,
        on_committed=push_to_subscribers,
        name=f"{settings.service_name}-projector",
    )
    return runtime


def create_app(
    runtime: ServiceRuntime | None = None,
    hub: SubscriptionHub | None = None,
):
    hub = hub or SubscriptionHub()
    if runtime is None:
        settings = Settings.from_env("read-model-service")
        configure_logging(settings.log_level)
        runtime = build_runtime(settings, hub)
    app = create_service_app("Read Model Service", runtime, [router])
    app.state.hub = hub
    return app
