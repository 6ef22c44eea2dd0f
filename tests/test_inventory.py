import pytest

from saga_services.inventory.app.handlers import InventoryStep
from saga_services.inventory.app.schema import INVENTORY_TABLES
from saga_services.inventory.app.store import ReservationStatus, get_reservation
from saga_services.shared import outbox
from saga_services.shared.decisions import always_fail, always_succeed
from saga_services.shared.events import EventType, create_event

ITEMS = [{"sku": "SKU-1", "qty": 2}]


@pytest.fixture
async def inventory_db(make_db):
    return await make_db("inventory", INVENTORY_TABLES)


def order_created(order_id="o-1"):
    return create_event(
        EventType.ORDER_CREATED,
        order_id,
        {"orderId": order_id, "items": ITEMS, "total": 20},
        correlation_id=order_id,
    )


def command(event_type, order_id="o-1", **payload):
    return create_event(
        event_type, order_id, {"orderId": order_id, **payload}, correlation_id=order_id
    )


async def deliver(session_factory, step, envelope):
    async with session_factory() as session:
        result = await step.handle(session, envelope)
        await session.commit()
    return result


async def staged(session_factory):
    async with session_factory() as session:
        return [r.envelope for r in await outbox.list_records(session)]


async def test_reserve_success(inventory_db):
    source = order_created()
    emitted = await deliver(inventory_db, InventoryStep(always_succeed()), source)

    assert emitted.type == EventType.INVENTORY_RESERVED.value
    assert emitted.payload == {"orderId": "o-1", "reservedItems": ITEMS}
    assert emitted.correlation_id == "o-1"
    assert emitted.causation_id == source.event_id
    assert emitted.key == "o-1"
    assert [e.event_id for e in await staged(inventory_db)] == [emitted.event_id]

    async with inventory_db() as session:
        reservation = await get_reservation(session, "o-1")
    assert reservation.status == ReservationStatus.RESERVED


async def test_reserve_failure_emits_exactly_one_failure(inventory_db):
    emitted = await deliver(inventory_db, InventoryStep(always_fail("Insufficient stock")), order_created())

    assert emitted.type == EventType.INVENTORY_FAILED.value
    assert emitted.payload == {"orderId": "o-1", "reason": "Insufficient stock"}
    assert [e.type for e in await staged(inventory_db)] == [EventType.INVENTORY_FAILED.value]


async def test_retry_after_failure(inventory_db):
    await deliver(inventory_db, InventoryStep(always_fail("Insufficient stock")), order_created())
    retry = command(EventType.RETRY_REQUESTED, step="inventory")
    emitted = await deliver(inventory_db, InventoryStep(always_succeed()), retry)

    assert emitted.type == EventType.INVENTORY_RESERVED.value
    assert emitted.causation_id == retry.event_id


async def test_retry_is_skipped_for_reserved_order(inventory_db):
    step = InventoryStep(always_succeed())
    await deliver(inventory_db, step, order_created())
    assert await deliver(inventory_db, step, command(EventType.RETRY_REQUESTED, step="inventory")) is None
    assert len(await staged(inventory_db)) == 1


async def test_retry_for_other_steps_is_ignored(inventory_db):
    step = InventoryStep(always_fail("x"))
    await deliver(inventory_db, step, order_created())
    assert await deliver(inventory_db, step, command(EventType.RETRY_REQUESTED, step="payment")) is None


async def test_release_compensation(inventory_db):
    step = InventoryStep(always_succeed())
    await deliver(inventory_db, step, order_created())
    release = command(EventType.COMPENSATION_REQUESTED, action="releaseInventory")
    emitted = await deliver(inventory_db, step, release)

    assert emitted.type == EventType.INVENTORY_RELEASED.value
    assert emitted.payload == {"orderId": "o-1", "releasedItems": ITEMS}
    async with inventory_db() as session:
        reservation = await get_reservation(session, "o-1")
    assert reservation.status == ReservationStatus.RELEASED

    # 解放済みの在庫は再び引き当てられる
    emitted = await deliver(inventory_db, step, command(EventType.RETRY_REQUESTED, step="inventory"))
    assert emitted.type == EventType.INVENTORY_RESERVED.value


async def test_release_without_reservation_is_skipped(inventory_db):
    step = InventoryStep(always_succeed())
    release = command(EventType.COMPENSATION_REQUESTED, action="releaseInventory")
    assert await deliver(inventory_db, step, release) is None
    assert await staged(inventory_db) == []


async def test_refund_compensation_is_not_for_inventory(inventory_db):
    step = InventoryStep(always_succeed())
    await deliver(inventory_db, step, order_created())
    refund = command(EventType.COMPENSATION_REQUESTED, action="refundPayment")
    assert await deliver(inventory_db, step, refund) is None
