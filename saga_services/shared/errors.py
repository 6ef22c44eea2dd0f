"""
Shared — 例外定義

Saga の基盤で扱うエラーの分類。
重複配信 (DuplicateDelivery) は例外ではなく、冪等性ガードの正常な結果として扱う。
"""


class SagaError(Exception):
    """基盤で発生するエラーの基底クラス"""


class EventValidationError(SagaError):
    """スキーマに合わないイベント。ステージング時点で拒否され、送信されない。"""


class UnknownEventType(EventValidationError):
    """スキーマが登録されていないイベントタイプ"""


class BrokerError(SagaError):
    """ブローカーとの通信に失敗した"""


class PublishError(BrokerError):
    """ブローカーへの発行に失敗した。Outbox のディスパッチャが再試行する。"""


class InvalidTransition(SagaError):
    """集約の現在の状態からは許可されない遷移"""

    def __init__(self, order_id: str | None, status: str, event_type: str) -> None:
        super().__init__(
            f"Order {order_id}: {event_type} is not allowed in status {status}"
        )
        self.order_id = order_id
        self.status = status
        self.event_type = event_type


class OrderNotFound(SagaError):
    """参照された注文が存在しない"""


class OrderAlreadyExists(SagaError):
    """同じ注文 ID で既に作成されている"""


class DeadLetterStagingError(SagaError):
    """
    Dead Letter のステージングに失敗した。

    唯一の致命的エラー。毒メッセージを黙って失うよりは
    コンシューマーを停止させる方が安全なので、必ず上位へ伝播させる。
    """
