"""
Order Service — FastAPI エントリーポイント

Command (POST) と Query (GET) のエンドポイントを分離。
注文作成はレートリミッタを通ってから冪等に受け付け、
在庫引き当てはアウトボックス経由でバックグラウンドに回す。

起動:
    uvicorn order_service.main:create_app --factory
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .config import Settings
from .errors import (
    NotFoundError,
    OptimisticConflict,
    OrderAlreadyExists,
    RateLimitExceeded,
    SerializationFailure,
)
from .inventory import HttpInventoryClient, InventoryEffect
from .metrics import Metrics
from .models import Order, OrderPage
from .pipeline import OrderPipeline
from .rate_limit import RateLimiter
from .repository import UnitOfWorkFactory
from .sql_store import sql_unit_of_work

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────

class CreateOrderRequest(BaseModel):
    order_id: str = Field(min_length=1)
    item_name: str
    quantity: int = Field(ge=0)
    idempotency_key: str = Field(min_length=1)


class IncreaseQuantityRequest(BaseModel):
    delta: int = Field(gt=0)


class OrderResponse(BaseModel):
    order_id: str
    item_name: str
    quantity: int
    idempotency_key: str

    @classmethod
    def of(cls, order: Order) -> "OrderResponse":
        return cls(
            order_id=order.order_id,
            item_name=order.item_name,
            quantity=order.quantity,
            idempotency_key=order.idempotency_key,
        )


class OrderPageResponse(BaseModel):
    items: list[OrderResponse]
    page: int
    size: int
    total: int

    @classmethod
    def of(cls, page: OrderPage) -> "OrderPageResponse":
        return cls(
            items=[OrderResponse.of(o) for o in page.items],
            page=page.page,
            size=page.size,
            total=page.total,
        )


# ── Dependencies ─────────────────────────────────

def enforce_rate_limit(request: Request) -> None:
    """
    送信元アドレスごとのレート制限。
    同期関数なのでスレッドプールで実行される。
    超過時は RateLimitExceeded を投げ、例外ハンドラが 429 を返す。
    """
    limiter: RateLimiter = request.app.state.rate_limiter
    client_key = request.client.host if request.client else "unknown"
    limiter.check(client_key)


def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    return request.app.state.uow_factory


async def _rate_limit_janitor(limiter: RateLimiter, shutdown: asyncio.Event) -> None:
    """終わったウィンドウのカウンタを定期的に捨てる。"""
    while not shutdown.is_set():
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=limiter.window_seconds)
        except asyncio.TimeoutError:
            dropped = limiter.prune()
            if dropped:
                logger.debug("Pruned %s rate limit counters", dropped)


def create_app(
    settings: Settings | None = None,
    uow_factory: UnitOfWorkFactory | None = None,
    inventory: InventoryEffect | None = None,
    redis: aioredis.Redis | None = None,
    run_relay: bool = True,
) -> FastAPI:
    """
    アプリを組み立てる。

    uow_factory / inventory / redis を渡さなければ設定から本物を作る。
    テストではインメモリのストアと偽の在庫サービスを渡す。
    """
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = http_client = owned_redis = None
        factory = uow_factory
        if factory is None:
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL is not set")
            engine = create_async_engine(settings.database_url, echo=False)
            factory = sql_unit_of_work(
                sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            )
        effect = inventory
        if effect is None:
            http_client = httpx.AsyncClient(timeout=settings.inventory_timeout)
            effect = HttpInventoryClient(settings.inventory_service_url, http_client)
        redis_conn = redis
        if redis_conn is None:
            owned_redis = redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)

        pipeline = OrderPipeline(settings, factory, effect, app.state.metrics, redis=redis_conn)
        app.state.uow_factory = factory
        app.state.pipeline = pipeline
        pipeline.start(run_relay=run_relay)

        shutdown = asyncio.Event()
        janitor = asyncio.create_task(_rate_limit_janitor(app.state.rate_limiter, shutdown))
        try:
            yield
        finally:
            shutdown.set()
            await janitor
            await pipeline.stop()
            if http_client is not None:
                await http_client.aclose()
            if owned_redis is not None:
                await owned_redis.aclose()
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.metrics = Metrics()
    app.state.rate_limiter = RateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    # ── Exception Handlers ───────────────────────────

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": "Order not found"})

    @app.exception_handler(OrderAlreadyExists)
    @app.exception_handler(OptimisticConflict)
    async def conflict(request: Request, exc: Exception):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def invalid_argument(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded):
        logger.warning("Rate limit exceeded for client=%s", exc.client_key)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many requests"},
            headers={"Retry-After": str(max(1, int(exc.retry_after + 0.999)))},
        )

    @app.exception_handler(SerializationFailure)
    async def serialization_failed(request: Request, exc: SerializationFailure):
        logger.error("Event serialization failed: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Failed to record order event"})

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/commands/orders", dependencies=[Depends(enforce_rate_limit)])
    async def cmd_create_order(
        req: CreateOrderRequest,
        factory: UnitOfWorkFactory = Depends(get_uow_factory),
    ) -> OrderResponse:
        """注文作成コマンド (同じ idempotency_key なら前回の結果を返す)"""
        order = await commands.create_order(
            factory,
            req.order_id, req.item_name, req.quantity, req.idempotency_key,
            metrics=app.state.metrics,
        )
        return OrderResponse.of(order)

    @app.post(
        "/commands/orders/{order_id}/increase",
        dependencies=[Depends(enforce_rate_limit)],
    )
    async def cmd_increase_quantity(
        order_id: str,
        req: IncreaseQuantityRequest,
        factory: UnitOfWorkFactory = Depends(get_uow_factory),
    ) -> OrderResponse:
        """数量加算コマンド (楽観的ロック、競合時は読み直して再試行)"""
        order = await commands.increase_quantity(factory, order_id, req.delta)
        return OrderResponse.of(order)

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/queries/orders")
    async def query_list_orders(
        page: int = Query(0, ge=0),
        size: int = Query(20, ge=1, le=queries.MAX_PAGE_SIZE),
        item_name: str | None = None,
        factory: UnitOfWorkFactory = Depends(get_uow_factory),
    ) -> OrderPageResponse:
        """注文一覧 (item_name で絞り込み可)"""
        return OrderPageResponse.of(await queries.list_orders(factory, page, size, item_name))

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(
        order_id: str,
        factory: UnitOfWorkFactory = Depends(get_uow_factory),
    ) -> OrderResponse:
        return OrderResponse.of(await queries.get_order(factory, order_id))

    # ── 運用 ─────────────────────────────────────────

    @app.post("/admin/circuit-breaker/reset")
    async def reset_circuit_breaker(request: Request):
        """開いたブレーカーを手動で閉じる (自動では閉じない)"""
        breaker = request.app.state.pipeline.breaker
        await breaker.reset()
        return breaker.snapshot()

    @app.get("/metrics")
    async def metrics(request: Request):
        return Response(request.app.state.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health(request: Request):
        return {
            "status": "ok",
            "service": "order-service",
            "circuit_breaker": request.app.state.pipeline.breaker.snapshot(),
            "pending_jobs": request.app.state.pipeline.pool.pending,
        }

    return app
