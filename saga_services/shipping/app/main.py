"""
Shipping Service — FastAPI エントリーポイント

起動: uvicorn saga_services.shipping.app.main:create_app --factory
"""

from fastapi import APIRouter, Depends, HTTPException

from saga_services.shared.broker import Broker
from saga_services.shared.config import Settings, configure_logging
from saga_services.shared.decisions import Strategy
from saga_services.shared.runtime import ServiceRuntime, get_runtime
from saga_services.shared.web import create_service_app

from .handlers import TOPICS, ShippingStep
from .schema import SHIPPING_TABLES
from .store import get_shipment

router = APIRouter()


@router.get("/shipments/{order_id}")
async def query_shipment(order_id: str, runtime: ServiceRuntime = Depends(get_runtime)):
    async with runtime.session_factory() as session:
        shipment = await get_shipment(session, order_id)
    if shipment is None:
        raise HTTPException(404, "Shipment not found")
    return shipment.to_dict()


def build_runtime(
    settings: Settings,
    broker: Broker | None = None,
    decide: Strategy | None = None,
) -> ServiceRuntime:
    runtime = ServiceRuntime(settings, schema=SHIPPING_TABLES, broker=broker)
    runtime.add_consumer(TOPICS, ShippingStep(decide).handle)
    return runtime


def create_app(runtime: ServiceRuntime | None = None):
    if runtime is None:
        settings = Settings.from_env("shipping-service")
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)
    return create_service_app("Shipping Service", runtime, [router])
