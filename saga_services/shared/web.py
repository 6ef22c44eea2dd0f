"""
Shared — FastAPI アプリケーションの組み立て

各サービスの main.py は自分のルーターとランタイムを渡すだけでよい。
lifespan でランタイムを start / stop し、/health と /metrics を共通で提供する。
"""

from collections.abc import Iterable
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Response

from . import metrics
from .runtime import ServiceRuntime, get_runtime

ops_router = APIRouter()


@ops_router.get("/health")
async def health(runtime: ServiceRuntime = Depends(get_runtime)):
    return {"status": "ok", "service": runtime.service_name}


@ops_router.get("/metrics")
async def prometheus_metrics():
    body, content_type = metrics.render_latest()
    return Response(content=body, media_type=content_type)


def create_service_app(
    title: str,
    runtime: ServiceRuntime,
    routers: Iterable[APIRouter] = (),
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        yield
        await runtime.stop()

    app = FastAPI(title=title, lifespan=lifespan)
    app.state.runtime = runtime
    for router in routers:
        app.include_router(router)
    app.include_router(ops_router)
    return app
