"""
Reservation Service — 仮押さえ (Hold Manager)

Hold は在庫を一定時間だけ確保する予約。
作成時に在庫台帳から減算し、注文への変換か期限切れによる解放の
どちらか一方で「消費」される。消費は条件付き UPDATE 1 回で行い、
並行する消費者のうち勝つのは 1 つだけ。
"""

from datetime import timedelta

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import config, ledger
from .cache import Cache, available_stock_key
from .db import holds, transaction
from .errors import HoldCreationFailed, InsufficientStock, InvalidInput
from .metrics import MetricsLogger
from .models import Hold, utcnow


async def create_hold(
    session: AsyncSession,
    cache: Cache,
    metrics: MetricsLogger,
    product_id: int,
    quantity: int,
    ttl: timedelta | None = None,
) -> Hold:
    """
    Hold 作成コマンド

    1. 在庫台帳から減算（行ロック）
    2. 不足なら競合メトリクスを記録して HoldCreationFailed
    3. expires_at = now + TTL の Hold を作成

    全体で 1 トランザクション。減算に失敗したら Hold は残らない。
    """
    if quantity <= 0:
        raise InvalidInput("Quantity must be positive")
    ttl = ttl or timedelta(seconds=config.HOLD_TTL_SECONDS)

    async with transaction(session):
        try:
            await ledger.decrement(session, cache, product_id, quantity)
        except InsufficientStock as e:
            await metrics.stock_contention(product_id, e.requested, e.available)
            raise HoldCreationFailed(product_id, e.requested, e.available) from e

        now = utcnow()
        result = await session.execute(
            insert(holds).values(
                product_id=product_id,
                quantity=quantity,
                expires_at=now + ttl,
                consumed=False,
                created_at=now,
            )
        )
        hold_id = result.inserted_primary_key[0]
        await cache.forget(available_stock_key(product_id))
        hold = await get_hold(session, hold_id)

    await metrics.hold_created(hold.id, product_id, quantity)
    return hold


async def get_hold(session: AsyncSession, hold_id: int) -> Hold | None:
    result = await session.execute(select(holds).where(holds.c.id == hold_id))
    row = result.first()
    return Hold.model_validate(row) if row else None


async def consume(session: AsyncSession, hold: Hold) -> bool:
    """
    Hold を消費済みにする。

    consumed = false の行だけを更新する 1 回の UPDATE なので、
    読んでから書く間に割り込まれることがない。
    更新できた（競争に勝った）ときだけ True を返す。
    """
    result = await session.execute(
        update(holds)
        .where(holds.c.id == hold.id, holds.c.consumed.is_(False))
        .values(consumed=True)
    )
    if result.rowcount != 1:
        return False
    hold.consumed = True
    return True
