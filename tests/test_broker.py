import json

from saga_services.shared import outbox
from saga_services.shared.broker import RedisStreamBroker
from saga_services.shared.consumer import EventConsumer
from saga_services.shared.dead_letter import dead_letter_topic
from saga_services.shared.events import EventType, create_event, parse_payload

TOPIC = EventType.ORDER_CREATED.topic


class StubRedis:
    """decode_responses=False の redis.asyncio.Redis と同じ形 (bytes) で応答する"""

    def __init__(self, entries=None):
        self.entries = entries or {}
        self.added = []
        self.acked = []

    async def xadd(self, stream, fields):
        self.added.append((stream, fields))
        return f"{len(self.added)}-0".encode()

    async def xreadgroup(self, group, consumer, streams, count=None, block=None):
        response = [
            [stream.encode(), self.entries.pop(stream)]
            for stream in streams
            if stream in self.entries
        ]
        return response

    async def xack(self, stream, group, *ids):
        self.acked.append((stream, *ids))


def order_created(order_id="o-1"):
    return create_event(
        EventType.ORDER_CREATED,
        order_id,
        {"orderId": order_id, "items": [{"sku": "SKU-1", "qty": 1}], "total": 10},
    )


def entry(message_id, topic, value, key=b"o-1"):
    return (
        message_id,
        {b"topic": topic.encode(), b"key": key, b"value": value, b"headers": b"{}"},
    )


async def test_events_of_one_order_share_a_stream():
    redis = StubRedis()
    broker = RedisStreamBroker(redis, partitions=4)
    created = order_created()
    failed = create_event(
        EventType.INVENTORY_FAILED, "o-1", {"orderId": "o-1", "reason": "none left"}
    )

    await broker.publish(TOPIC, created)
    await broker.publish(EventType.INVENTORY_FAILED.topic, failed)

    streams = {stream for stream, _ in redis.added}
    assert streams == {broker.stream_for("o-1")}
    assert [fields["topic"] for _, fields in redis.added] == [
        TOPIC,
        EventType.INVENTORY_FAILED.topic,
    ]
    assert json.loads(redis.added[0][1]["value"])["eventId"] == created.event_id


async def test_read_skips_topics_outside_the_subscription():
    broker = RedisStreamBroker(StubRedis(), partitions=1)
    stream = broker.streams[0]
    created = order_created()
    broker.redis.entries = {
        stream: [
            entry(b"1-0", TOPIC, created.to_json().encode()),
            entry(b"2-0", EventType.PAYMENT_FAILED.topic, b"{}"),
        ]
    }

    messages = await broker.read([TOPIC], "inventory", "inventory-1")

    assert len(messages) == 1
    assert messages[0].topic == TOPIC
    assert messages[0].message_id == "1-0"
    assert messages[0].key == "o-1"
    assert messages[0].stream == stream
    assert broker.redis.acked == [(stream, "2-0")]


async def test_invalid_utf8_is_dead_lettered(session_factory):
    broker = RedisStreamBroker(StubRedis(), partitions=1)
    stream = broker.streams[0]
    broker.redis.entries = {stream: [entry(b"5-0", TOPIC, b'\xff\xfe{"eventId": ')]}
    consumer = EventConsumer("inventory", [TOPIC], broker, session_factory, None)

    assert await consumer.poll() == 1
    assert broker.redis.acked == [(stream, "5-0")]

    async with session_factory() as session:
        records = await outbox.list_records(session, dead_letter_topic(TOPIC))
    assert len(records) == 1
    body = parse_payload(records[0].envelope)
    assert body.order_id is None
    assert body.original_type == TOPIC
    assert "\ufffd" in body.payload
