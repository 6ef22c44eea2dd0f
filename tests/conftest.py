import asyncio
from collections.abc import Iterable

import pytest

from saga_services.shared.broker import BrokerMessage
from saga_services.shared.database import (
    SHARED_TABLES,
    create_engine,
    create_session_factory,
    init_schema,
)
from saga_services.shared.errors import PublishError
from saga_services.shared.events import EventEnvelope, ensure_valid


class InMemoryBroker:
    """
    Redis Streams ブローカーと同じ振る舞いを持つテスト用ブローカー

    全イベントを 1 本のログに XADD の順で積み、グループごとのカーソルと未 ACK 一覧を持つ。
    購読していないトピックのエントリは読んだ時点で読み飛ばす (ACK 済み扱い)。
    available を False にすると publish が PublishError になる。
    """

    def __init__(self) -> None:
        self.available = True
        self.closed = False
        self.log: list[BrokerMessage] = []
        self._cursors: dict[str, int] = {}
        self._pending: dict[str, dict[str, BrokerMessage]] = {}
        self._seq = 0

    def _append(self, topic: str, value: str | None, key: str | None, headers: dict) -> BrokerMessage:
        self._seq += 1
        message = BrokerMessage(
            topic=topic,
            message_id=f"{self._seq}-0",
            value=value,
            key=key,
            headers=headers,
            stream="memory",
        )
        self.log.append(message)
        return message

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        if not self.available:
            raise PublishError("broker unavailable")
        ensure_valid(envelope)
        self._append(
            topic,
            envelope.to_json(),
            envelope.key,
            {k: str(v) for k, v in envelope.headers.items()},
        )

    def inject(self, topic: str, value: str | None, key: str | None = None) -> BrokerMessage:
        """検証を通さずに生のメッセージを積む（毒メッセージの再現用）"""
        return self._append(topic, value, key, {})

    async def ensure_group(self, topics: list[str], group: str) -> None:
        self._cursors.setdefault(group, 0)
        self._pending.setdefault(group, {})

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
        await self.ensure_group(topics, group)
        unacked = self._pending[group]
        if pending:
            return list(unacked.values())[:count]

        start = self._cursors[group]
        batch = self.log[start:start + count]
        self._cursors[group] = start + len(batch)
        messages = [m for m in batch if m.topic in topics]
        for message in messages:
            unacked[message.message_id] = message
        if not batch:
            # XREADGROUP の BLOCK 相当。ループに制御を返す
            await asyncio.sleep(min(block_ms, 10) / 1000)
        return messages

    async def ack(self, message: BrokerMessage, group: str) -> None:
        self._pending.get(group, {}).pop(message.message_id, None)

    async def close(self) -> None:
        self.closed = True

    # ── テスト用の参照 ──

    def envelopes(self, topic: str) -> list[EventEnvelope]:
        return [
            EventEnvelope.from_json(message.value)
            for message in self.log
            if message.topic == topic
        ]

    def pending_count(self, topic: str, group: str) -> int:
        return sum(1 for m in self._pending.get(group, {}).values() if m.topic == topic)

    def lag(self, group: str) -> int:
        """グループがまだ読んでいないエントリ数"""
        return len(self.log) - self._cursors.get(group, 0)


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def sqlite_url(tmp_path):
    def make(name: str = "test") -> str:
        return f"sqlite+aiosqlite:///{tmp_path / name}.db"

    return make


@pytest.fixture
async def make_db(sqlite_url):
    """サービスごとの SQLite DB を作り、テスト終了時に破棄する"""
    engines = []

    async def make(name: str = "test", tables: Iterable[str] = ()):
        engine = create_engine(sqlite_url(name))
        await init_schema(engine, [*SHARED_TABLES, *tables])
        engines.append(engine)
        return create_session_factory(engine)

    yield make
    for engine in engines:
        await engine.dispose()


@pytest.fixture
async def session_factory(make_db):
    return await make_db()
