"""
Reservation Service — 在庫台帳 (Stock Ledger)

商品の在庫数を変更する唯一の入口。

  decrement: 商品行を FOR UPDATE でロックしてから在庫を読み直し、
             足りなければ InsufficientStock。同じ商品への並行な減算は
             ロックで直列化されるので、古い在庫数を元に売り越すことはない。
  increment: 以前に減算した分を戻す（期限切れ・キャンセル）。上限チェックはしない。

どちらも呼び出し元のトランザクション内で実行する。
"""

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .cache import Cache, available_stock_key
from .db import holds, products
from .errors import InsufficientStock, ProductNotFound
from .models import utcnow


async def decrement(
    session: AsyncSession,
    cache: Cache,
    product_id: int,
    quantity: int,
) -> int:
    """在庫を減らし、減算後の在庫数を返す。"""
    result = await session.execute(
        select(products.c.stock)
        .where(products.c.id == product_id)
        .with_for_update()
    )
    current = result.scalar_one_or_none()
    if current is None:
        raise ProductNotFound(product_id)
    if current < quantity:
        raise InsufficientStock(product_id, requested=quantity, available=current)

    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock - quantity, updated_at=utcnow())
    )
    await cache.forget(available_stock_key(product_id))
    return current - quantity


async def increment(
    session: AsyncSession,
    cache: Cache,
    product_id: int,
    quantity: int,
) -> None:
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + quantity, updated_at=utcnow())
    )
    if result.rowcount == 0:
        raise ProductNotFound(product_id)
    await cache.forget(available_stock_key(product_id))


async def available_stock(
    session: AsyncSession,
    cache: Cache,
    product_id: int,
    ttl: float = config.AVAILABLE_STOCK_CACHE_TTL,
) -> int:
    """
    有効在庫 = max(0, 在庫 - 有効な Hold の数量合計)

    短い TTL でキャッシュする。在庫が変わるたびに無効化されるので、
    古い値が見えるのは最大でも TTL の間だけ。
    """
    key = available_stock_key(product_id)
    cached = await cache.get(key)
    if cached is not None:
        return int(cached)

    stock = (
        await session.execute(
            select(products.c.stock).where(products.c.id == product_id)
        )
    ).scalar_one_or_none()
    if stock is None:
        raise ProductNotFound(product_id)

    held = (
        await session.execute(
            select(func.coalesce(func.sum(holds.c.quantity), 0)).where(
                holds.c.product_id == product_id,
                holds.c.consumed.is_(False),
                holds.c.expires_at > utcnow(),
            )
        )
    ).scalar_one()

    available = max(0, stock - int(held))
    await cache.set(key, str(available), ttl)
    return available
