import pytest

from saga_services.shared import outbox
from saga_services.shared.broker import BrokerMessage
from saga_services.shared.dead_letter import DeadLetterRouter, dead_letter_topic
from saga_services.shared.errors import DeadLetterStagingError
from saga_services.shared.events import EventType, create_event, parse_payload

TOPIC = EventType.ORDER_CREATED.topic


def message_for(envelope, message_id="1-0"):
    return BrokerMessage(topic=TOPIC, message_id=message_id, value=envelope.to_json())


def order_created():
    return create_event(
        EventType.ORDER_CREATED,
        "o-1",
        {"orderId": "o-1", "items": [{"sku": "SKU-1", "qty": 1}], "total": 10},
        correlation_id="o-1",
    )


def test_dead_letter_topic_naming():
    assert dead_letter_topic("payment.PaymentFailed.v1") == "payment.PaymentFailed.v1.dlq"


async def test_route_wraps_the_original(session_factory):
    source = order_created()
    router = DeadLetterRouter(session_factory, "inventory-consumer")

    dead = await router.route(message_for(source), RuntimeError("kaboom"))

    assert dead.type == EventType.DEAD_LETTER.value
    assert dead.key == "o-1"
    assert dead.correlation_id == "o-1"
    assert dead.causation_id == source.event_id
    assert dead.headers == {"consumer": "inventory-consumer", "sourceTopic": TOPIC}
    body = parse_payload(dead)
    assert body.original_type == TOPIC
    assert body.original_event_id == source.event_id
    assert body.order_id == "o-1"
    assert body.error == "RuntimeError: kaboom"
    assert body.payload == source.payload

    async with session_factory() as session:
        records = await outbox.list_records(session, dead_letter_topic(TOPIC))
    assert [r.event_id for r in records] == [dead.event_id]


async def test_unparseable_message_is_still_dead_lettered(session_factory):
    router = DeadLetterRouter(session_factory, "inventory-consumer")
    message = BrokerMessage(topic=TOPIC, message_id="7-0", value="{not json")

    dead = await router.route(message, ValueError("bad json"))

    body = parse_payload(dead)
    assert body.order_id is None
    assert body.original_type == TOPIC
    assert body.original_event_id == "unknown"
    assert body.payload == "{not json"
    assert dead.key == "unknown"


async def test_redelivered_poison_message_is_dead_lettered_once(session_factory):
    source = order_created()
    router = DeadLetterRouter(session_factory, "inventory-consumer")

    first = await router.route(message_for(source, "1-0"), RuntimeError("x"))
    second = await router.route(message_for(source, "9-0"), RuntimeError("x"))

    assert first.event_id == second.event_id
    async with session_factory() as session:
        assert len(await outbox.list_records(session)) == 1


async def test_staging_failure_propagates(session_factory):
    class BrokenFactory:
        def __call__(self):
            raise OSError("disk full")

    router = DeadLetterRouter(BrokenFactory(), "inventory-consumer")
    with pytest.raises(DeadLetterStagingError):
        await router.route(message_for(order_created()), RuntimeError("x"))
