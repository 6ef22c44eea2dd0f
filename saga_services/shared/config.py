"""
Shared — 設定とロギング

設定は起動時に環境変数から一度だけ読み込み、Settings として明示的に渡す。
"""

import logging
import os
from dataclasses import dataclass

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(frozen=True)
class Settings:
    service_name: str
    database_url: str
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"
    outbox_interval: float = 0.5
    outbox_batch_size: int = 50
    consumer_block_ms: int = 1000
    stream_partitions: int = 4
    jwt_secret: str = "devsecret"
    jwt_algorithm: str = "HS256"

    @classmethod
    def from_env(cls, default_service: str) -> "Settings":
        return cls(
            service_name=os.environ.get("SERVICE_NAME", default_service),
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            outbox_interval=float(os.environ.get("OUTBOX_INTERVAL_SECONDS", "0.5")),
            outbox_batch_size=int(os.environ.get("OUTBOX_BATCH_SIZE", "50")),
            consumer_block_ms=int(os.environ.get("CONSUMER_BLOCK_MS", "1000")),
            stream_partitions=int(os.environ.get("STREAM_PARTITIONS", "4")),
            jwt_secret=os.environ.get("JWT_SECRET", "devsecret"),
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
