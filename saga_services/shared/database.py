"""
Shared — データベース接続とスキーマ

各サービスは独自のデータストアを持つ（Database per Service パターン）。
Outbox と処理済みイベントのテーブルは全サービス共通の構造で、
サービスごとのテーブルは各サービスの schema モジュールで定義する。

時刻は固定長の ISO-8601 文字列、JSON はテキストとして保存する。
PostgreSQL (asyncpg) と SQLite (aiosqlite) のどちらでも同じ SQL が動く。
"""

import json
from collections.abc import Iterable
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

OUTBOX_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS outbox (
        event_id VARCHAR(64) PRIMARY KEY,
        topic VARCHAR(255) NOT NULL,
        event_key VARCHAR(255) NOT NULL,
        event TEXT NOT NULL,
        sent_at VARCHAR(40),
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_outbox_pending ON outbox (sent_at, created_at)",
]

# (consumer, event_id) の一意制約が冪等性を保証する
PROCESSED_EVENTS_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        consumer VARCHAR(255) NOT NULL,
        event_id VARCHAR(64) NOT NULL,
        processed_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (consumer, event_id)
    )
    """,
]

SHARED_TABLES = OUTBOX_TABLES + PROCESSED_EVENTS_TABLES


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine, statements: Iterable[str]) -> None:
    """CREATE TABLE IF NOT EXISTS を順に実行する（何度呼んでもよい）。"""
    async with engine.begin() as conn:
        for statement in statements:
            await conn.execute(text(statement))


def dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def loads(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value
