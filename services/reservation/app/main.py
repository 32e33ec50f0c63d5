"""
Reservation Service — FastAPI エントリーポイント

在庫の仮押さえ (Hold)・注文・決済 Webhook を扱うサービス。
整合性はすべて DB 側（行ロック・条件付き UPDATE・一意制約）で担保し、
プロセス内の共有状態には依存しない。

┌────────┐  hold   ┌──────────────┐  decrement  ┌──────────────┐
│ Client │───────▶│ Hold Manager │───────────▶│ Stock Ledger │
│        │  order  ├──────────────┤             └──────▲───────┘
│        │───────▶│ Orders       │────────────────────┤ increment
└────────┘         └──────▲───────┘                    │
┌─────────┐ webhook ┌─────┴────────┐             ┌─────┴────────┐
│ Payment │───────▶│ Reconciler   │             │ Sweeper      │ (定期実行)
└─────────┘         └──────────────┘             └──────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Literal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config, holds, orders, queries, sweeper, webhooks
from .cache import Cache, InMemoryCache, RedisCache
from .db import metadata
from .errors import ReservationError
from .metrics import MetricsLogger

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
cache: Cache = InMemoryCache()
metrics = MetricsLogger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にスキーマを作成し、期限切れスイーパーをバックグラウンドで開始する。"""
    global redis_pool, cache, metrics

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    if config.CACHE_BACKEND == "redis":
        redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
        cache = RedisCache(redis_pool)
        metrics = MetricsLogger(redis_pool)

    shutdown_event = asyncio.Event()
    sweeper_task = None
    if config.SWEEPER_ENABLED:
        sweeper_task = asyncio.create_task(
            sweeper.run_sweeper(
                async_session,
                cache,
                metrics,
                config.SWEEP_INTERVAL_SECONDS,
                shutdown_event,
            )
        )
    yield
    shutdown_event.set()
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Reservation Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class CreateHoldRequest(BaseModel):
    product_id: int
    qty: int


class CreateOrderRequest(BaseModel):
    hold_id: int


class PaymentWebhookRequest(BaseModel):
    # 追加の項目 (product_id, quantity, hold_id など) もペイロードとして保持する
    model_config = ConfigDict(extra="allow")

    idempotency_key: str = Field(min_length=1)
    order_id: int
    status: Literal["success", "failure"]


def _http_error(e: ReservationError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


# ── Command Endpoints ────────────────────────────


@app.post("/api/holds", status_code=201)
async def cmd_create_hold(req: CreateHoldRequest):
    """在庫の仮押さえ"""
    async with async_session() as session:
        try:
            hold = await holds.create_hold(session, cache, metrics, req.product_id, req.qty)
        except ReservationError as e:
            raise _http_error(e)
        return {"hold_id": hold.id, "expires_at": hold.expires_at.isoformat()}


@app.post("/api/holds/expire")
async def cmd_expire_holds():
    """期限切れスイープを即時実行する（運用向け）"""
    released = await sweeper.sweep_expired_holds(async_session, cache, metrics)
    return {"released": released}


@app.post("/api/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest):
    """Hold から注文を作成"""
    async with async_session() as session:
        try:
            order = await orders.create_from_hold(session, req.hold_id)
        except ReservationError as e:
            raise _http_error(e)
        return queries.order_to_dict(order)


@app.post("/api/payments/webhook")
async def cmd_payment_webhook(req: PaymentWebhookRequest):
    """決済 Webhook（同じ idempotency_key の再送は duplicate として返す）"""
    async with async_session() as session:
        try:
            result = await webhooks.process_webhook(
                session,
                cache,
                metrics,
                req.idempotency_key,
                req.order_id,
                req.status,
                req.model_dump(),
            )
        except ReservationError as e:
            raise _http_error(e)
        return result.model_dump()


# ── Query Endpoints ──────────────────────────────


@app.get("/api/products/{product_id}")
async def query_get_product(product_id: int):
    """商品と有効在庫"""
    async with async_session() as session:
        product = await queries.get_product(session, cache, product_id)
        if not product:
            raise HTTPException(404, "Product not found")
        return product


@app.get("/api/holds/{hold_id}")
async def query_get_hold(hold_id: int):
    async with async_session() as session:
        hold = await queries.get_hold(session, hold_id)
        if not hold:
            raise HTTPException(404, "Hold not found")
        return hold


@app.get("/api/orders/{order_id}")
async def query_get_order(order_id: int):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/health")
async def health():
    return {"status": "ok", "service": "reservation-service"}
