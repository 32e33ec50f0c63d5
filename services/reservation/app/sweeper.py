"""
Reservation Service — 期限切れ Hold の回収 (Expiry Sweeper)

未消費のまま期限を過ぎた Hold を探し、在庫を 1 回だけ戻す。

候補の選択と解放の間に注文変換や Webhook が割り込むことがあるので、
Hold ごとに独立したトランザクションで読み直し、条件付きの消費に
勝ったときだけ在庫を戻す。1 件の失敗でバッチ全体は止めない。
"""

import asyncio
import logging
import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import holds, ledger
from .cache import Cache
from .db import holds as holds_table
from .metrics import MetricsLogger
from .models import Hold, utcnow

logger = logging.getLogger(__name__)


async def _release_expired(
    session: AsyncSession,
    cache: Cache,
    hold_id: int,
) -> Hold | None:
    """競争に勝って在庫を戻したときだけ Hold を返す。"""
    hold = await holds.get_hold(session, hold_id)
    if hold is None or hold.consumed or not hold.is_expired():
        return None
    if not await holds.consume(session, hold):
        return None
    await ledger.increment(session, cache, hold.product_id, hold.quantity)
    return hold


async def sweep_expired_holds(
    session_factory: async_sessionmaker,
    cache: Cache,
    metrics: MetricsLogger,
) -> int:
    """期限切れの Hold を 1 回スイープし、在庫を戻した件数を返す。"""
    started = time.perf_counter()

    async with session_factory() as session:
        result = await session.execute(
            select(holds_table.c.id)
            .where(
                holds_table.c.consumed.is_(False),
                holds_table.c.expires_at < utcnow(),
            )
            .order_by(holds_table.c.id)
        )
        candidate_ids = list(result.scalars())

    released = 0
    for hold_id in candidate_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    hold = await _release_expired(session, cache, hold_id)
        except Exception:
            logger.exception("Failed to expire hold %s", hold_id)
            continue

        if hold is not None:
            released += 1
            await metrics.hold_expired(hold.id, hold.product_id, hold.quantity)

    duration_ms = (time.perf_counter() - started) * 1000
    await metrics.batch_expiry(len(candidate_ids), released, duration_ms)
    return released


async def run_sweeper(
    session_factory: async_sessionmaker,
    cache: Cache,
    metrics: MetricsLogger,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """
    interval 秒ごとにスイープする。
    shutdown_event がセットされるまで待機を繰り返す。
    """
    logger.info("Expiry sweeper started (interval=%ss)", interval)
    while not shutdown_event.is_set():
        try:
            await sweep_expired_holds(session_factory, cache, metrics)
        except Exception:
            logger.exception("Expiry sweep failed")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Expiry sweeper stopped")
