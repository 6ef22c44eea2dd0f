import pytest

from saga_services.payment.app import store
from saga_services.payment.app.handlers import PaymentStep
from saga_services.payment.app.schema import PAYMENT_TABLES
from saga_services.payment.app.store import PaymentStatus, get_payment
from saga_services.shared import outbox
from saga_services.shared.decisions import always_fail, always_succeed
from saga_services.shared.errors import OrderNotFound
from saga_services.shared.events import EventType, create_event

ITEMS = [{"sku": "SKU-1", "qty": 2}]


@pytest.fixture
async def payment_db(make_db):
    return await make_db("payment", PAYMENT_TABLES)


def event(event_type, order_id="o-1", **payload):
    return create_event(
        event_type, order_id, {"orderId": order_id, **payload}, correlation_id=order_id
    )


def order_created(order_id="o-1", total=20):
    return event(EventType.ORDER_CREATED, order_id, items=ITEMS, total=total)


def inventory_reserved(order_id="o-1"):
    return event(EventType.INVENTORY_RESERVED, order_id, reservedItems=ITEMS)


async def deliver(session_factory, step, envelope):
    async with session_factory() as session:
        result = await step.handle(session, envelope)
        await session.commit()
    return result


async def staged(session_factory):
    async with session_factory() as session:
        return [r.envelope for r in await outbox.list_records(session)]


async def payment_status(session_factory, order_id="o-1"):
    async with session_factory() as session:
        payment = await get_payment(session, order_id)
    return payment.status if payment else None


async def test_order_created_records_pending_payment(payment_db):
    step = PaymentStep(always_succeed())
    assert await deliver(payment_db, step, order_created(total=42.5)) is None
    async with payment_db() as session:
        payment = await get_payment(session, "o-1")
    assert payment.status == PaymentStatus.PENDING
    assert payment.amount == 42.5
    assert await staged(payment_db) == []


async def test_authorize_success(payment_db):
    step = PaymentStep(always_succeed(authId="auth_123"))
    await deliver(payment_db, step, order_created())
    source = inventory_reserved()
    emitted = await deliver(payment_db, step, source)

    assert emitted.type == EventType.PAYMENT_AUTHORIZED.value
    assert emitted.payload == {"orderId": "o-1", "amount": 20.0, "authId": "auth_123"}
    assert emitted.causation_id == source.event_id
    assert await payment_status(payment_db) == PaymentStatus.AUTHORIZED


async def test_authorize_failure_requests_inventory_release(payment_db):
    step = PaymentStep(always_fail("Card declined"))
    await deliver(payment_db, step, order_created())
    source = inventory_reserved()
    failed = await deliver(payment_db, step, source)

    events = await staged(payment_db)
    assert [e.type for e in events] == [
        EventType.PAYMENT_FAILED.value,
        EventType.COMPENSATION_REQUESTED.value,
    ]
    payment_failed, compensation = events
    assert payment_failed.event_id == failed.event_id
    assert payment_failed.payload == {"orderId": "o-1", "reason": "Card declined"}
    assert payment_failed.causation_id == source.event_id
    assert compensation.payload == {"orderId": "o-1", "action": "releaseInventory"}
    assert compensation.causation_id == payment_failed.event_id
    assert compensation.correlation_id == "o-1"
    assert await payment_status(payment_db) == PaymentStatus.FAILED


async def test_reserved_before_order_created_is_an_error(payment_db):
    with pytest.raises(OrderNotFound):
        await deliver(payment_db, PaymentStep(always_succeed()), inventory_reserved())


async def test_retry_needs_reserved_inventory(payment_db):
    await deliver(payment_db, PaymentStep(always_succeed()), order_created())
    retry = event(EventType.RETRY_REQUESTED, step="payment")
    assert await deliver(payment_db, PaymentStep(always_succeed()), retry) is None
    assert await payment_status(payment_db) == PaymentStatus.PENDING
    assert await staged(payment_db) == []


async def test_retry_with_reserved_inventory(payment_db):
    await deliver(payment_db, PaymentStep(always_succeed()), order_created())
    async with payment_db() as session:
        await store.set_inventory_reserved(session, "o-1", True)
        await session.commit()

    retry = event(EventType.RETRY_REQUESTED, step="payment")
    emitted = await deliver(payment_db, PaymentStep(always_succeed()), retry)
    assert emitted.type == EventType.PAYMENT_AUTHORIZED.value
    assert emitted.causation_id == retry.event_id
    assert emitted.payload["authId"].startswith("auth_")


async def test_failure_drops_reservation_until_reserved_again(payment_db):
    await deliver(payment_db, PaymentStep(always_fail("Card declined")), order_created())
    await deliver(payment_db, PaymentStep(always_fail("Card declined")), inventory_reserved())
    async with payment_db() as session:
        assert not (await get_payment(session, "o-1")).inventory_reserved

    # 在庫解放の補償が走ったあとは、支払いだけ再試行しても何もしない
    retry = event(EventType.RETRY_REQUESTED, step="payment")
    assert await deliver(payment_db, PaymentStep(always_succeed()), retry) is None
    assert await payment_status(payment_db) == PaymentStatus.FAILED

    # 在庫の再試行で再び確保されると、オーソリもやり直される
    emitted = await deliver(payment_db, PaymentStep(always_succeed()), inventory_reserved())
    assert emitted.type == EventType.PAYMENT_AUTHORIZED.value
    assert await payment_status(payment_db) == PaymentStatus.AUTHORIZED


async def test_inventory_released_clears_reservation(payment_db):
    step = PaymentStep(always_succeed())
    await deliver(payment_db, step, order_created())
    async with payment_db() as session:
        await store.set_inventory_reserved(session, "o-1", True)
        await session.commit()

    released = event(EventType.INVENTORY_RELEASED, releasedItems=ITEMS)
    assert await deliver(payment_db, step, released) is None
    async with payment_db() as session:
        assert not (await get_payment(session, "o-1")).inventory_reserved
    assert await deliver(payment_db, step, event(EventType.RETRY_REQUESTED, step="payment")) is None


async def test_inventory_released_for_unknown_order_is_ignored(payment_db):
    released = event(EventType.INVENTORY_RELEASED, "o-9", releasedItems=ITEMS)
    assert await deliver(payment_db, PaymentStep(always_succeed()), released) is None



async def test_retry_of_authorized_payment_is_skipped(payment_db):
    step = PaymentStep(always_succeed())
    await deliver(payment_db, step, order_created())
    await deliver(payment_db, step, inventory_reserved())
    assert await deliver(payment_db, step, event(EventType.RETRY_REQUESTED, step="payment")) is None
    assert len(await staged(payment_db)) == 1


async def test_refund_compensation(payment_db):
    step = PaymentStep(always_succeed())
    await deliver(payment_db, step, order_created())
    await deliver(payment_db, step, inventory_reserved())

    refund = event(EventType.COMPENSATION_REQUESTED, action="refundPayment")
    emitted = await deliver(payment_db, step, refund)
    assert emitted.type == EventType.PAYMENT_REFUNDED.value
    assert emitted.payload["amount"] == 20.0
    assert emitted.payload["refundId"].startswith("refund_")
    assert await payment_status(payment_db) == PaymentStatus.REFUNDED

    # 二度目の返金要求は何もしない
    again = event(EventType.COMPENSATION_REQUESTED, action="refundPayment")
    assert await deliver(payment_db, step, again) is None
    assert [e.type for e in await staged(payment_db)].count(EventType.PAYMENT_REFUNDED.value) == 1


async def test_refund_without_authorization_is_skipped(payment_db):
    step = PaymentStep(always_succeed())
    await deliver(payment_db, step, order_created())
    refund = event(EventType.COMPENSATION_REQUESTED, action="refundPayment")
    assert await deliver(payment_db, step, refund) is None
    assert await payment_status(payment_db) == PaymentStatus.PENDING
