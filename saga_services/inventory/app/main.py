"""
Inventory Service — FastAPI エントリーポイント

OrderCreated を購読して在庫を引き当て、結果を Outbox 経由で発行する。
HTTP は引き当て状態の参照だけを提供する。

起動: uvicorn saga_services.inventory.app.main:create_app --factory
"""

from fastapi import APIRouter, Depends, HTTPException

from saga_services.shared.broker import Broker
from saga_services.shared.config import Settings, configure_logging
from saga_services.shared.decisions import Strategy
from saga_services.shared.runtime import ServiceRuntime, get_runtime
from saga_services.shared.web import create_service_app

from .handlers import TOPICS, InventoryStep
from .schema import INVENTORY_TABLES
from .store import get_reservation

router = APIRouter()


@router.get("/reservations/{order_id}")
async def query_reservation(order_id: str, runtime: ServiceRuntime = Depends(get_runtime)):
    async with runtime.session_factory() as session:
        reservation = await get_reservation(session, order_id)
    if reservation is None:
        raise HTTPException(404, "Reservation not found")
    return reservation.to_dict()


def build_runtime(
    settings: Settings,
    broker: Broker | None = None,
    decide: Strategy | None = None,
) -> ServiceRuntime:
    runtime = ServiceRuntime(settings, schema=INVENTORY_TABLES, broker=broker)
    runtime.add_consumer(TOPICS, InventoryStep(decide).handle)
    return runtime


def create_app(runtime: ServiceRuntime | None = None):
    if runtime is None:
        settings = Settings.from_env("inventory-service")
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)
    return create_service_app("Inventory Service", runtime, [router])
