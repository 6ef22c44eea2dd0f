import asyncio

import pytest

from saga_services.read_model.app import queries
from saga_services.read_model.app.main import event_stream
from saga_services.read_model.app.projections import (
    PROJECTED_TOPICS,
    STATUS_BY_TYPE,
    OrderProjector,
)
from saga_services.read_model.app.schema import READ_MODEL_TABLES
from saga_services.read_model.app.subscriptions import SubscriptionHub
from saga_services.shared.events import EventType, create_event

ITEMS = [{"sku": "SKU-1", "qty": 2}]


@pytest.fixture
async def read_db(make_db):
    return await make_db("read_model", READ_MODEL_TABLES)


def event(event_type, order_id="o-1", **payload):
    return create_event(
        event_type, order_id, {"orderId": order_id, **payload}, correlation_id=order_id
    )


async def project(session_factory, envelope):
    async with session_factory() as session:
        update = await OrderProjector().project(session, envelope)
        await session.commit()
    return update


def test_every_domain_event_is_projected():
    assert EventType.DEAD_LETTER not in STATUS_BY_TYPE
    assert set(STATUS_BY_TYPE) == set(EventType) - {EventType.DEAD_LETTER}
    assert EventType.ORDER_CREATED.topic in PROJECTED_TOPICS


async def test_projection_follows_the_stream(read_db):
    created = event(EventType.ORDER_CREATED, items=ITEMS, total=20)
    first = await project(read_db, created)
    assert first.order_id == "o-1"
    assert first.data == {
        "type": "order.OrderCreated.v1",
        "at": created.timestamp,
        "details": {"items": ITEMS, "total": 20},
        "status": "CREATED",
    }
    await project(read_db, event(EventType.INVENTORY_RESERVED, reservedItems=ITEMS))
    shipped = event(EventType.PAYMENT_AUTHORIZED, amount=20, authId="a")
    await project(read_db, shipped)

    async with read_db() as session:
        projection = await queries.get_projection(session, "o-1")
    assert projection["currentStatus"] == "PAYMENT_AUTHORIZED"
    assert projection["createdAt"] == created.timestamp
    assert projection["updatedAt"] == shipped.timestamp
    assert [t["type"] for t in projection["timeline"]] == [
        "order.OrderCreated.v1",
        "inventory.InventoryReserved.v1",
        "payment.PaymentAuthorized.v1",
    ]
    assert projection["timeline"][2]["details"] == {"amount": 20, "authId": "a"}


async def test_timeline_only_events_keep_status(read_db):
    await project(read_db, event(EventType.ORDER_CREATED, items=ITEMS, total=20))
    await project(read_db, event(EventType.INVENTORY_RESERVED, reservedItems=ITEMS))
    await project(read_db, event(EventType.PAYMENT_FAILED, reason="declined"))
    update = await project(read_db, event(EventType.INVENTORY_RELEASED, releasedItems=ITEMS))

    assert update.data["status"] == "PAYMENT_FAILED"
    async with read_db() as session:
        projection = await queries.get_projection(session, "o-1")
    assert projection["currentStatus"] == "PAYMENT_FAILED"
    assert len(projection["timeline"]) == 4


async def test_timeline_only_event_first(read_db):
    update = await project(read_db, event(EventType.RETRY_REQUESTED, step="inventory"))
    assert update.data["status"] == "UNKNOWN"


async def test_list_projections_by_status(read_db):
    await project(read_db, event(EventType.ORDER_CREATED, "o-1", items=ITEMS, total=20))
    await project(read_db, event(EventType.ORDER_CREATED, "o-2", items=ITEMS, total=20))
    await project(read_db, event(EventType.INVENTORY_FAILED, "o-2", reason="none"))

    async with read_db() as session:
        everything = await queries.list_projections(session)
        failed = await queries.list_projections(session, status="INVENTORY_FAILED")
        missing = await queries.get_projection(session, "o-3")

    assert [p["orderId"] for p in everything] == ["o-2", "o-1"]
    assert [p["orderId"] for p in failed] == ["o-2"]
    assert missing is None


# ── ライブ購読 ───────────────────────────────────

async def test_hub_delivers_to_subscribers_of_the_order():
    hub = SubscriptionHub()
    async with hub.subscribe("o-1") as first, hub.subscribe("o-1") as second:
        async with hub.subscribe("o-2") as other:
            assert hub.publish("o-1", {"type": "x"}) == 2
            assert first.get_nowait() == {"type": "x"}
            assert second.get_nowait() == {"type": "x"}
            assert other.empty()
    assert hub.subscriber_count() == 0
    assert hub.publish("o-1", {"type": "y"}) == 0


async def test_hub_removes_subscriber_on_error():
    hub = SubscriptionHub()
    with pytest.raises(RuntimeError):
        async with hub.subscribe("o-1"):
            assert hub.subscriber_count("o-1") == 1
            raise RuntimeError("connection reset")
    assert hub.subscriber_count("o-1") == 0


async def test_hub_removes_subscriber_on_cancel():
    hub = SubscriptionHub()
    attached = asyncio.Event()

    async def listen():
        async with hub.subscribe("o-1") as queue:
            attached.set()
            await queue.get()

    task = asyncio.create_task(listen())
    await attached.wait()
    assert hub.subscriber_count("o-1") == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert hub.subscriber_count("o-1") == 0


async def test_event_stream_frames():
    hub = SubscriptionHub()

    async def connected():
        return False

    stream = event_stream(hub, "o-1", connected, keepalive=0.01)
    assert await stream.__anext__() == ": connected\n\n"
    assert await stream.__anext__() == ": keep-alive\n\n"

    hub.publish("o-1", {"type": "shipping.OrderShipped.v1", "status": "SHIPPED"})
    frame = await stream.__anext__()
    assert frame == 'data: {"type": "shipping.OrderShipped.v1", "status": "SHIPPED"}\n\n'

    await stream.aclose()
    assert hub.subscriber_count("o-1") == 0


async def test_event_stream_ends_on_disconnect():
    hub = SubscriptionHub()

    async def disconnected():
        return True

    frames = [frame async for frame in event_stream(hub, "o-1", disconnected)]
    assert frames == [": connected\n\n"]
    assert hub.subscriber_count() == 0
