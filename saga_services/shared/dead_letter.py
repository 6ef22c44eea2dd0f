"""
Shared — Dead Letter ルーター

ハンドラが例外を投げたメッセージを ops.DeadLetter.v1 で包み、
<元のトピック>.dlq へ Outbox 経由でステージングする。
ストリームを止めずに毒メッセージを隔離し、通常の発行と同じ耐久性を得る。

JSON として読めないメッセージも捨てずに、orderId なしの Dead Letter にする。
Dead Letter のステージング自体が失敗した場合だけは DeadLetterStagingError を送出し、
そのコンシューマーを停止させる。
"""

import json
import logging
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from sqlalchemy.orm import sessionmaker

from .broker import BrokerMessage
from .errors import DeadLetterStagingError
from .events import DeadLetter, EventEnvelope, EventType, create_event
from .outbox import enqueue

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


def dead_letter_topic(topic: str) -> str:
    return f"{topic}.dlq"


def _parse_best_effort(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _describe(error: BaseException) -> str:
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class DeadLetterRouter:
    def __init__(self, session_factory: sessionmaker, consumer_name: str) -> None:
        self.session_factory = session_factory
        self.consumer_name = consumer_name

    def build(self, message: BrokerMessage, error: BaseException) -> EventEnvelope:
        """
        Dead Letter エンベロープを組み立てる。

        eventId は (コンシューマー, トピック, 元の eventId) から決定的に導出するので、
        同じ毒メッセージが再配信されても Outbox 上は 1 件にまとまる。
        """
        parsed = _parse_best_effort(message.value)
        payload = parsed.get("payload")
        order_id = payload.get("orderId") if isinstance(payload, dict) else None
        if not isinstance(order_id, str):
            order_id = None
        original_event_id = parsed.get("eventId")
        if not isinstance(original_event_id, str) or not original_event_id:
            original_event_id = None

        original_type = parsed.get("type")
        if not isinstance(original_type, str) or not original_type:
            original_type = message.topic
        correlation_id = parsed.get("correlationId")
        if not isinstance(correlation_id, str):
            correlation_id = None

        seed = f"{self.consumer_name}:{message.topic}:{original_event_id or message.message_id}"
        dead_letter_id = str(uuid5(NAMESPACE_URL, seed))

        body = DeadLetter(
            original_type=original_type,
            original_event_id=original_event_id or UNKNOWN,
            order_id=order_id,
            error=_describe(error),
            payload=payload if parsed else message.value,
        )
        envelope = create_event(
            EventType.DEAD_LETTER,
            order_id or UNKNOWN,
            body,
            correlation_id=correlation_id or dead_letter_id,
            causation_id=original_event_id,
            headers={"consumer": self.consumer_name, "sourceTopic": message.topic},
        )
        return envelope.model_copy(update={"event_id": dead_letter_id})

    async def route(self, message: BrokerMessage, error: BaseException) -> EventEnvelope:
        topic = dead_letter_topic(message.topic)
        try:
            dead_letter = self.build(message, error)
            async with self.session_factory() as session:
                await enqueue(session, topic, dead_letter)
                await session.commit()
        except Exception as exc:
            logger.error(
                "Cannot stage dead letter for %s from %s", message.message_id, message.topic
            )
            raise DeadLetterStagingError(
                f"Dead letter for {message.topic}/{message.message_id} could not be staged"
            ) from exc
        logger.warning(
            "Dead-lettered %s (%s) to %s",
            dead_letter.payload.get("originalEventId"), message.topic, topic,
        )
        return dead_letter
