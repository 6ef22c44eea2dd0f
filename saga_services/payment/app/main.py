"""
Payment Service — FastAPI エントリーポイント

起動: uvicorn saga_services.payment.app.main:create_app --factory
"""

from fastapi import APIRouter, Depends, HTTPException

from saga_services.shared.broker import Broker
from saga_services.shared.config import Settings, configure_logging
from saga_services.shared.decisions import Strategy
from saga_services.shared.runtime import ServiceRuntime, get_runtime
from saga_services.shared.web import create_service_app

from .handlers import TOPICS, PaymentStep
from .schema import PAYMENT_TABLES
from .store import get_payment

router = APIRouter()


@router.get("/payments/{order_id}")
async def query_payment(order_id: str, runtime: ServiceRuntime = Depends(get_runtime)):
    async with runtime.session_factory() as session:
        payment = await get_payment(session, order_id)
    if payment is None:
        raise HTTPException(404, "Payment not found")
    return payment.to_dict()


def build_runtime(
    settings: Settings,
    broker: Broker | None = None,
    decide: Strategy | None = None,
) -> ServiceRuntime:
    runtime = ServiceRuntime(settings, schema=PAYMENT_TABLES, broker=broker)
    runtime.add_consumer(TOPICS, PaymentStep(decide).handle)
    return runtime


def create_app(runtime: ServiceRuntime | None = None):
    if runtime is None:
        settings = Settings.from_env("payment-service")
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)
    return create_service_app("Payment Service", runtime, [router])
