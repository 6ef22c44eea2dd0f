"""
Order Service — 注文集約 (Order Aggregate)

注文の状態は下流サービスのイベントによってのみ遷移する。
遷移表にない遷移は InvalidTransition になり、そのイベントは Dead Letter に回る。

apply メソッド: イベントを適用して状態を変更し、履歴に追記する
"""

from enum import Enum
from typing import Any

from saga_services.shared.errors import InvalidTransition
from saga_services.shared.events import EventType, LineItem


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    INVENTORY_RESERVED = "INVENTORY_RESERVED"
    INVENTORY_FAILED = "INVENTORY_FAILED"
    PAYMENT_AUTHORIZED = "PAYMENT_AUTHORIZED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SHIPPED = "SHIPPED"
    SHIPPING_FAILED = "SHIPPING_FAILED"
    REFUNDED = "REFUNDED"


# イベント → (遷移先, 遷移元として許可する状態)
TRANSITIONS: dict[EventType, tuple[OrderStatus, frozenset[OrderStatus]]] = {
    EventType.INVENTORY_RESERVED: (
        OrderStatus.INVENTORY_RESERVED,
        frozenset({
            OrderStatus.CREATED,
            OrderStatus.INVENTORY_FAILED,
            OrderStatus.PAYMENT_FAILED,
        }),
    ),
    EventType.INVENTORY_FAILED: (
        OrderStatus.INVENTORY_FAILED,
        frozenset({OrderStatus.CREATED, OrderStatus.INVENTORY_FAILED}),
    ),
    EventType.PAYMENT_AUTHORIZED: (
        OrderStatus.PAYMENT_AUTHORIZED,
        frozenset({OrderStatus.INVENTORY_RESERVED, OrderStatus.PAYMENT_FAILED}),
    ),
    EventType.PAYMENT_FAILED: (
        OrderStatus.PAYMENT_FAILED,
        frozenset({OrderStatus.INVENTORY_RESERVED, OrderStatus.PAYMENT_FAILED}),
    ),
    EventType.ORDER_SHIPPED: (
        OrderStatus.SHIPPED,
        frozenset({OrderStatus.PAYMENT_AUTHORIZED, OrderStatus.SHIPPING_FAILED}),
    ),
    EventType.SHIPPING_FAILED: (
        OrderStatus.SHIPPING_FAILED,
        frozenset({OrderStatus.PAYMENT_AUTHORIZED, OrderStatus.SHIPPING_FAILED}),
    ),
    EventType.PAYMENT_REFUNDED: (
        OrderStatus.REFUNDED,
        frozenset({
            OrderStatus.PAYMENT_AUTHORIZED,
            OrderStatus.SHIPPED,
            OrderStatus.SHIPPING_FAILED,
        }),
    ),
}

# 状態は変えずに履歴だけ残すイベント
HISTORY_ONLY = frozenset({
    EventType.INVENTORY_RELEASED,
    EventType.RETRY_REQUESTED,
    EventType.COMPENSATION_REQUESTED,
})


class OrderAggregate:
    """
    注文集約

    状態遷移:
        CREATED → INVENTORY_RESERVED → PAYMENT_AUTHORIZED → SHIPPED → REFUNDED
              ↘ INVENTORY_FAILED    ↘ PAYMENT_FAILED     ↘ SHIPPING_FAILED → REFUNDED
                (再試行で復帰)        (在庫解放を補償)      (返金を補償)
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.items: list[dict] = []
        self.total: float = 0
        self.status: OrderStatus = OrderStatus.CREATED
        self.correlation_id: str = ""
        self.history: list[dict] = []
        self.created_at: str | None = None
        self.updated_at: str | None = None

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(
        self,
        order_id: str,
        items: list[LineItem],
        total: float,
        correlation_id: str,
        at: str,
    ) -> dict:
        self.id = order_id
        self.items = [item.to_wire() for item in items]
        self.total = total
        self.status = OrderStatus.CREATED
        self.correlation_id = correlation_id
        self.created_at = at
        return self._record(
            EventType.ORDER_CREATED, {"items": self.items, "total": total}, at
        )

    def can_apply(self, event_type: EventType) -> bool:
        if event_type in HISTORY_ONLY:
            return True
        transition = TRANSITIONS.get(event_type)
        return transition is not None and self.status in transition[1]

    def apply(self, event_type: EventType, details: dict[str, Any], at: str) -> dict:
        """イベントを適用し、追記した履歴エントリを返す。"""
        if not self.can_apply(event_type):
            raise InvalidTransition(self.id, self.status.value, event_type.value)
        if event_type in TRANSITIONS:
            self.status = TRANSITIONS[event_type][0]
        return self._record(event_type, details, at)

    def _record(self, event_type: EventType, details: dict[str, Any], at: str) -> dict:
        entry = {"type": event_type.value, "at": at, "details": details}
        self.history.append(entry)
        self.updated_at = at
        return entry

    # ── 永続化からの復元 ─────────────────────────────

    @classmethod
    def from_row(cls, row: Any, items: list[dict], history: list[dict]) -> "OrderAggregate":
        agg = cls()
        agg.id = row.order_id
        agg.items = items
        agg.total = float(row.total)
        agg.status = OrderStatus(row.status)
        agg.correlation_id = row.correlation_id
        agg.history = history
        agg.created_at = row.created_at
        agg.updated_at = row.updated_at
        return agg

    def to_dict(self) -> dict:
        return {
            "orderId": self.id,
            "items": self.items,
            "total": self.total,
            "status": self.status.value,
            "correlationId": self.correlation_id,
            "history": self.history,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
