"""
Order Service — メトリクス

prometheus_client のカウンタとゲージ。/metrics エンドポイントが
テキスト形式 (generate_latest) で返す。

アプリ (create_app) ごとに CollectorRegistry を持つので、
同じプロセスで何度アプリを組み立てても登録が衝突しない。
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class Metrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.orders_created = Counter(
            "orders_created", "Orders committed by create_order", registry=self.registry
        )
        self.inventory_failures = Counter(
            "inventory_failures",
            "Inventory reservations that failed after all retries",
            registry=self.registry,
        )
        self.effects_skipped = Counter(
            "inventory_skipped",
            "Inventory reservations skipped because the circuit was open",
            registry=self.registry,
        )
        self.circuit_open = Gauge(
            "inventory_circuit_open",
            "1 while the inventory circuit breaker is open",
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)
