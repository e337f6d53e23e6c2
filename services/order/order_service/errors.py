"""
Order Service — 例外定義

注文パイプラインで発生する失敗を型で区別する。
受付時のエラー (直列化・競合) は呼び出し元へそのまま伝播し、
リレー・コンシューマ側のエラーはその場でログに残して再試行に回す。

重複リクエスト (同じ冪等キー) は例外ではない。既存の注文を返すだけ。
"""


class OrderServiceError(Exception):
    """注文サービスの例外の基底クラス"""


class NotFoundError(OrderServiceError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderAlreadyExists(OrderServiceError):
    """別の冪等キーで同じ order_id が既に使われている"""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order already exists: {order_id}")


class DuplicateKeyRace(OrderServiceError):
    """同じ冪等キーの並行 INSERT が先にコミットされた"""

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Idempotency key already committed: {idempotency_key}")


class OptimisticConflict(OrderServiceError):
    """バージョン不一致 — 呼び出し元は読み直してやり直す"""

    def __init__(self, order_id: str, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict on order {order_id} (expected version {expected_version})"
        )


class SerializationFailure(OrderServiceError):
    """イベントペイロードのエンコード / デコードに失敗した"""


class TransientEffectFailure(OrderServiceError):
    """下流 (在庫サービス) 呼び出しの一時的な失敗"""


class CircuitOpenError(OrderServiceError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit '{name}' is OPEN")


class RateLimitExceeded(OrderServiceError):
    def __init__(self, client_key: str, retry_after: float):
        self.client_key = client_key
        self.retry_after = retry_after
        super().__init__(f"Too many requests from {client_key}, retry after {retry_after:.0f}s")


class WorkerPoolSaturated(OrderServiceError):
    """ワーカープールのキューが満杯のまま投入タイムアウトに達した"""
