"""
Shared — イベントエンベロープとスキーマレジストリ

すべてのサービスは同じ形のエンベロープでイベントをやり取りする。
エンベロープは識別子と因果関係のメタデータ (correlationId / causationId) を持ち、
ペイロードは type ごとに登録された pydantic スキーマで検証する。

スキーマは type 名の末尾 (.v1) でバージョン管理する。
互換性のない変更は新しい type (.v2) を追加し、既存のスキーマは書き換えない。
過去のイベントを再生(リプレイ)できなくなるため。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    PositiveInt,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from .errors import EventValidationError, UnknownEventType

Scalar = str | int | float | bool


_last_now: datetime | None = None


def now_iso() -> str:
    """
    UTC の現在時刻を固定長の ISO-8601 文字列で返す (文字列順 = 時刻順)。

    同じプロセス内では呼び出し順に厳密に増加する。
    """
    global _last_now
    now = datetime.now(timezone.utc)
    if _last_now is not None and now <= _last_now:
        now = _last_now + timedelta(microseconds=1)
    _last_now = now
    return now.isoformat(timespec="microseconds")


class EventType(str, Enum):
    """イベントの種類。トピック名と同じ文字列を値に持つ。"""

    ORDER_CREATED = "order.OrderCreated.v1"
    INVENTORY_RESERVED = "inventory.InventoryReserved.v1"
    INVENTORY_FAILED = "inventory.InventoryFailed.v1"
    INVENTORY_RELEASED = "inventory.InventoryReleased.v1"
    PAYMENT_AUTHORIZED = "payment.PaymentAuthorized.v1"
    PAYMENT_FAILED = "payment.PaymentFailed.v1"
    PAYMENT_REFUNDED = "payment.PaymentRefunded.v1"
    ORDER_SHIPPED = "shipping.OrderShipped.v1"
    SHIPPING_FAILED = "shipping.ShippingFailed.v1"
    RETRY_REQUESTED = "ops.RetryRequested.v1"
    COMPENSATION_REQUESTED = "ops.CompensationRequested.v1"
    DEAD_LETTER = "ops.DeadLetter.v1"

    @property
    def topic(self) -> str:
        return self.value


# ── ペイロード定義 ───────────────────────────────


class Payload(BaseModel):
    """ワイヤ上は camelCase、Python 側は snake_case で扱う。"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class LineItem(Payload):
    sku: str
    qty: PositiveInt


class OrderCreated(Payload):
    """注文が作成された"""
    order_id: str
    items: list[LineItem]
    total: NonNegativeFloat


class InventoryReserved(Payload):
    """在庫が引き当てられた"""
    order_id: str
    reserved_items: list[LineItem]


class InventoryFailed(Payload):
    """在庫引き当てが失敗した"""
    order_id: str
    reason: str


class InventoryReleased(Payload):
    """引き当て済みの在庫が解放された（補償トランザクション）"""
    order_id: str
    released_items: list[LineItem]


class PaymentAuthorized(Payload):
    """支払いがオーソリされた"""
    order_id: str
    amount: NonNegativeFloat
    auth_id: str


class PaymentFailed(Payload):
    """支払いが失敗した"""
    order_id: str
    reason: str


class PaymentRefunded(Payload):
    """支払いが返金された（補償トランザクション）"""
    order_id: str
    amount: NonNegativeFloat
    refund_id: str


class OrderShipped(Payload):
    """注文が出荷された"""
    order_id: str
    carrier: str
    tracking_id: str


class ShippingFailed(Payload):
    """出荷が失敗した"""
    order_id: str
    reason: str


class RetryRequested(Payload):
    """オペレーターによる再試行コマンド"""
    order_id: str
    step: Literal["inventory", "payment", "shipping"]


class CompensationRequested(Payload):
    """補償コマンド（自動またはオペレーター発行）"""
    order_id: str
    action: Literal["releaseInventory", "refundPayment"]


class DeadLetter(Payload):
    """処理できなかったメッセージのラッパー"""
    original_type: str
    original_event_id: str
    order_id: str | None = None
    error: str
    payload: Any = None


SCHEMAS: dict[EventType, type[Payload]] = {
    EventType.ORDER_CREATED: OrderCreated,
    EventType.INVENTORY_RESERVED: InventoryReserved,
    EventType.INVENTORY_FAILED: InventoryFailed,
    EventType.INVENTORY_RELEASED: InventoryReleased,
    EventType.PAYMENT_AUTHORIZED: PaymentAuthorized,
    EventType.PAYMENT_FAILED: PaymentFailed,
    EventType.PAYMENT_REFUNDED: PaymentRefunded,
    EventType.ORDER_SHIPPED: OrderShipped,
    EventType.SHIPPING_FAILED: ShippingFailed,
    EventType.RETRY_REQUESTED: RetryRequested,
    EventType.COMPENSATION_REQUESTED: CompensationRequested,
    EventType.DEAD_LETTER: DeadLetter,
}


# ── エンベロープ ─────────────────────────────────


class EventEnvelope(BaseModel):
    """
    イベントエンベロープ（不変）

    eventId は再利用しない。key は注文 ID で、同じ注文のイベントでは常に同じ値。
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    event_id: str
    type: str
    version: int = 1
    timestamp: str
    correlation_id: str
    causation_id: str | None = None
    key: str
    payload: dict[str, Any]
    headers: dict[str, Scalar] = Field(default_factory=dict)

    @property
    def event_type(self) -> EventType:
        try:
            return EventType(self.type)
        except ValueError:
            raise UnknownEventType(f"Unknown event type {self.type}") from None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "EventEnvelope":
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise EventValidationError(f"Malformed envelope: {exc}") from exc


def create_event(
    event_type: EventType,
    key: str,
    payload: Payload | dict[str, Any],
    *,
    correlation_id: str | None = None,
    causation_id: str | None = None,
    headers: dict[str, Scalar] | None = None,
) -> EventEnvelope:
    """
    新しいイベントを生成する。

    eventId と timestamp を刻印し、Saga のコンテキストが無ければ
    correlationId は自身の eventId になる（Saga の起点イベント）。
    """
    event_id = str(uuid4())
    if isinstance(payload, Payload):
        payload = payload.to_wire()
    return EventEnvelope(
        event_id=event_id,
        type=EventType(event_type).value,
        version=1,
        timestamp=now_iso(),
        correlation_id=correlation_id or event_id,
        causation_id=causation_id,
        key=key,
        payload=payload,
        headers=headers or {},
    )


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    error: str | None = None


def schema_for(type_name: str) -> type[Payload] | None:
    try:
        return SCHEMAS[EventType(type_name)]
    except ValueError:
        return None


def validate_event(envelope: EventEnvelope) -> ValidationResult:
    """登録済みスキーマでペイロードを検証する。"""
    schema = schema_for(envelope.type)
    if schema is None:
        return ValidationResult(ok=False, error=f"Unknown event type {envelope.type}")
    try:
        schema.model_validate(envelope.payload)
    except ValidationError as exc:
        return ValidationResult(ok=False, error=str(exc))
    return ValidationResult(ok=True)


def ensure_valid(envelope: EventEnvelope) -> None:
    """validate_event の例外版。送信・ステージングの直前に呼ぶ。"""
    result = validate_event(envelope)
    if result.ok:
        return
    if schema_for(envelope.type) is None:
        raise UnknownEventType(result.error)
    raise EventValidationError(f"Invalid event {envelope.type}: {result.error}")


def parse_payload(envelope: EventEnvelope) -> Payload:
    """ペイロードを type に対応する型付きモデルとして取り出す。"""
    schema = SCHEMAS[envelope.event_type]
    try:
        return schema.model_validate(envelope.payload)
    except ValidationError as exc:
        raise EventValidationError(f"Invalid event {envelope.type}: {exc}") from exc
