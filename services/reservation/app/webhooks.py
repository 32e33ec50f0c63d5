"""
Reservation Service — 決済 Webhook の照合 (Webhook Reconciler)

決済 Webhook は少なくとも 1 回配送され、注文作成との順序も保証されない。
idempotency_key ごとに最初の 1 回だけ注文と在庫を変更し、
2 回目以降は記録済みの結果を duplicate として返す。

  1. idempotency_key で記録済みイベントを探す → あれば duplicate
  2. 注文を解決する。無ければペイロードから create_direct
  3. success → 支払い済み / それ以外 → キャンセル（在庫を戻す）
  4. WebhookEvent を記録する

並行配送が 2 件とも 1 を通過した場合は、idempotency_key の一意制約で
後からコミットした側が失敗する。その側はロールバックして duplicate を返す。
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import orders
from .cache import Cache
from .db import webhook_events
from .errors import InvalidInput, MalformedWebhookPayload
from .metrics import MetricsLogger
from .models import WebhookEvent, WebhookResult, utcnow

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


class DirectOrderPayload(BaseModel):
    """注文より先に届いた Webhook が持っているべき項目"""
    product_id: int
    quantity: int = Field(gt=0)
    hold_id: int | None = None


async def find_event(session: AsyncSession, idempotency_key: str) -> WebhookEvent | None:
    result = await session.execute(
        select(webhook_events).where(webhook_events.c.idempotency_key == idempotency_key)
    )
    row = result.first()
    return WebhookEvent.model_validate(row) if row else None


def _duplicate(event: WebhookEvent) -> WebhookResult:
    return WebhookResult(
        processed=True,
        duplicate=True,
        order_id=event.order_id,
        status=event.status,
    )


async def process_webhook(
    session: AsyncSession,
    cache: Cache,
    metrics: MetricsLogger,
    idempotency_key: str,
    order_id: int | None,
    status: str,
    payload: dict[str, Any],
) -> WebhookResult:
    """
    決済 Webhook 処理コマンド

    一意制約違反をロールバックして拾い直すため、トランザクションは
    ここで開始する（開始前のセッションを渡すこと）。
    """
    if not idempotency_key:
        raise InvalidInput("idempotency_key is required")
    if status not in (STATUS_SUCCESS, STATUS_FAILURE):
        raise InvalidInput(f"Unknown payment status: {status}")

    try:
        async with session.begin():
            existing = await find_event(session, idempotency_key)
            if existing is not None:
                result = _duplicate(existing)
            else:
                result = await _apply(session, cache, idempotency_key, order_id, status, payload)
    except IntegrityError:
        # 同じキーの並行配送が先にコミットした
        async with session.begin():
            existing = await find_event(session, idempotency_key)
        if existing is None:
            raise
        logger.info("Webhook %s lost the insert race; returning recorded result", idempotency_key)
        result = _duplicate(existing)

    await metrics.webhook_processed(idempotency_key, result.duplicate)
    return result


async def _apply(
    session: AsyncSession,
    cache: Cache,
    idempotency_key: str,
    order_id: int | None,
    status: str,
    payload: dict[str, Any],
) -> WebhookResult:
    order = await orders.get_order(session, order_id) if order_id is not None else None

    if order is None:
        # 注文作成より先に決済通知が届いた
        try:
            data = DirectOrderPayload.model_validate(payload)
        except ValidationError as e:
            raise MalformedWebhookPayload(
                "Missing product_id or quantity in payload"
            ) from e
        order = await orders.create_direct(
            session, cache, data.product_id, data.quantity, data.hold_id
        )

    if status == STATUS_SUCCESS:
        order = await orders.mark_as_paid(session, order)
    else:
        order = await orders.cancel(session, cache, order)

    await session.execute(
        insert(webhook_events).values(
            idempotency_key=idempotency_key,
            order_id=order.id,
            status=status,
            payload=payload,
            processed_at=utcnow(),
        )
    )

    return WebhookResult(
        processed=True,
        duplicate=False,
        order_id=order.id,
        status=status,
    )
