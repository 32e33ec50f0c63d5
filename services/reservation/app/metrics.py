"""
Reservation Service — メトリクス出力

各イベントをログに書き、Redis が設定されていれば Pub/Sub にも発行する。
発行の失敗は業務処理に影響させない（ログに残すだけ）。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .events import (
    ExpiryBatch,
    HoldCreated,
    HoldExpired,
    StockContention,
    WebhookProcessed,
)
from .models import utcnow

logger = logging.getLogger(__name__)

METRICS_CHANNEL = "reservation_metrics"


class MetricsLogger:
    def __init__(
        self,
        redis: aioredis.Redis | None = None,
        channel: str = METRICS_CHANNEL,
    ) -> None:
        self.redis = redis
        self.channel = channel

    async def emit(self, metric: str, event: BaseModel, level: int = logging.INFO) -> None:
        data = event.model_dump(mode="json")
        logger.log(level, "%s %s", metric, json.dumps(data))
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                self.channel,
                json.dumps({"metric": metric, "data": data}, default=str),
            )
        except RedisError:
            logger.warning("Failed to publish metric %s", metric, exc_info=True)

    async def hold_created(self, hold_id: int, product_id: int, quantity: int) -> None:
        await self.emit(
            "hold.created",
            HoldCreated(
                hold_id=hold_id,
                product_id=product_id,
                quantity=quantity,
                timestamp=utcnow(),
            ),
        )

    async def hold_expired(self, hold_id: int, product_id: int, quantity: int) -> None:
        await self.emit(
            "hold.expired",
            HoldExpired(
                hold_id=hold_id,
                product_id=product_id,
                quantity=quantity,
                timestamp=utcnow(),
            ),
        )

    async def batch_expiry(self, candidates: int, expired_count: int, duration_ms: float) -> None:
        await self.emit(
            "expiry.batch",
            ExpiryBatch(
                candidates=candidates,
                expired_count=expired_count,
                duration_ms=duration_ms,
                timestamp=utcnow(),
            ),
        )

    async def webhook_processed(self, idempotency_key: str, is_duplicate: bool) -> None:
        await self.emit(
            "webhook.processed",
            WebhookProcessed(
                idempotency_key=idempotency_key,
                is_duplicate=is_duplicate,
                timestamp=utcnow(),
            ),
        )

    async def stock_contention(
        self,
        product_id: int,
        requested: int,
        available: int,
        attempts: int = 1,
    ) -> None:
        await self.emit(
            "stock.contention",
            StockContention(
                product_id=product_id,
                requested=requested,
                available=available,
                attempts=attempts,
                timestamp=utcnow(),
            ),
            level=logging.WARNING,
        )
