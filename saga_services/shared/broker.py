"""
Shared — メッセージブローカー (Redis Streams)

Redis Pub/Sub は fire-and-forget で、購読者がダウンしている間のイベントは失われる。
Saga には永続的で順序が保証された配信が必要なので Redis Streams を使う。

  - トピック = エントリの topic フィールド
  - ストリーム = キー (注文 ID) のパーティション。同じ注文のイベントは必ず同じストリームに入る
  - サービス = コンシューマーグループ (XREADGROUP)。購読していないトピックは読んだ時点で ACK する
  - 処理完了後に XACK。ACK されなかったメッセージは再起動後に再配信される

ストリーム内の順序は XADD の順なので、トピックをまたいでも注文ごとの因果順序が保たれる。
エントリは bytes のまま受け取り、不正な UTF-8 は置換文字にして Dead Letter に回せる形で返す。
"""

import json
import logging
import zlib
from dataclasses import dataclass, field
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .errors import BrokerError, PublishError
from .events import EventEnvelope, ensure_valid

logger = logging.getLogger(__name__)

STREAM_PREFIX = "saga.events"
DEFAULT_PARTITIONS = 4


@dataclass(frozen=True)
class BrokerMessage:
    """ブローカーから受け取った生のメッセージ"""
    topic: str
    message_id: str
    value: str | None
    key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    stream: str | None = None


class Broker(Protocol):
    async def publish(self, topic: str, envelope: EventEnvelope) -> None: ...

    async def ensure_group(self, topics: list[str], group: str) -> None: ...

    async def read(
        self,
        topics: list[str],
        group: str,
        consumer: str,
        *,
        count: int = 10,
        block_ms: int = 1000,
        pending: bool = False,
    ) -> list[BrokerMessage]: ...

    async def ack(self, message: BrokerMessage, group: str) -> None: ...

    async def close(self) -> None: ...


def _text(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        headers = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring unreadable headers: %r", raw[:200])
        return {}
    return headers if isinstance(headers, dict) else {}


class RedisStreamBroker:
    """Redis Streams によるブローカー実装"""

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        partitions: int = DEFAULT_PARTITIONS,
        prefix: str = STREAM_PREFIX,
    ) -> None:
        self.redis = redis
        self.streams = [f"{prefix}.{n}" for n in range(partitions)]

    @classmethod
    def from_url(cls, redis_url: str, partitions: int = DEFAULT_PARTITIONS) -> "RedisStreamBroker":
        return cls(aioredis.from_url(redis_url, decode_responses=False), partitions=partitions)

    def stream_for(self, key: str | None) -> str:
        """キーが同じなら常に同じストリーム"""
        return self.streams[zlib.crc32((key or "").encode()) % len(self.streams)]

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        """検証してから XADD する。不正なイベントはワイヤに載せない。"""
        ensure_valid(envelope)
        fields = {
            "topic": topic,
            "key": envelope.key,
            "value": envelope.to_json(),
            "headers": json.dumps({k: str(v) for k, v in envelope.headers.items()}),
        }
        try:
            await self.redis.xadd(self.stream_for(envelope.key), fields)
        except RedisError as exc:
            raise PublishError(
                f"Failed to publish {envelope.event_id} to {topic}: {exc}"
            ) from exc

    async def ensure_group(self, topics: list[str], group: str) -> None:
        """全パーティションにコンシューマーグループを作成する (ストリームの先頭から読む)。"""
        for stream in self.streams:
            try:
                await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise BrokerError(f"Cannot create group {group} on {stream}: {exc}") from exc
            except RedisError as exc:
                raise BrokerError(f"Cannot create group {group} on {stream}: {exc}") from exc

    async def read(
        self,
        topics: list[str],
        group: str,
        consumer: str,
        *,
        count: int = 10,
        block_ms: int = 1000,
        pending: bool = False,
    ) -> list[BrokerMessage]:
        """
        購読トピックのメッセージを読む。

        pending=True のときは自分宛ての未 ACK メッセージ (前回クラッシュ時の処理中メッセージ) を、
        False のときは新着メッセージを返す。各パーティション内の順序はそのまま保つ。
        """
        cursor = "0" if pending else ">"
        try:
            response = await self.redis.xreadgroup(
                group,
                consumer,
                {stream: cursor for stream in self.streams},
                count=count,
                block=None if pending else block_ms,
            )
        except RedisError as exc:
            raise BrokerError(f"Read from {self.streams} failed: {exc}") from exc

        if isinstance(response, dict):
            entries_by_stream = list(response.items())
        else:
            entries_by_stream = list(response or [])

        subscribed = set(topics)
        messages = []
        for stream, entries in entries_by_stream:
            stream = _text(stream)
            unsubscribed = []
            for message_id, fields in entries:
                message_id = _text(message_id)
                fields = {_text(k): _text(v) for k, v in (fields or {}).items()}
                if fields.get("topic") not in subscribed:
                    unsubscribed.append(message_id)
                    continue
                messages.append(
                    BrokerMessage(
                        topic=fields["topic"],
                        message_id=message_id,
                        value=fields.get("value"),
                        key=fields.get("key"),
                        headers=_headers(fields.get("headers")),
                        stream=stream,
                    )
                )
            if unsubscribed:
                try:
                    await self.redis.xack(stream, group, *unsubscribed)
                except RedisError as exc:
                    raise BrokerError(f"Ack on {stream} failed: {exc}") from exc
        return messages

    async def ack(self, message: BrokerMessage, group: str) -> None:
        stream = message.stream or self.stream_for(message.key)
        try:
            await self.redis.xack(stream, group, message.message_id)
        except RedisError as exc:
            raise BrokerError(f"Ack of {message.message_id} failed: {exc}") from exc

    async def close(self) -> None:
        await self.redis.aclose()
