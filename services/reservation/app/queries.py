"""
Reservation Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import holds, ledger, orders
from .cache import Cache
from .db import products
from .models import Hold, Order


def hold_to_dict(hold: Hold) -> dict:
    return {
        "hold_id": hold.id,
        "product_id": hold.product_id,
        "quantity": hold.quantity,
        "expires_at": hold.expires_at.isoformat(),
        "consumed": hold.consumed,
    }


def order_to_dict(order: Order) -> dict:
    return {
        "order_id": order.id,
        "hold_id": order.hold_id,
        "product_id": order.product_id,
        "quantity": order.quantity,
        "total_price": str(order.total_price),
        "status": order.status.value,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


async def get_product(session: AsyncSession, cache: Cache, product_id: int) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": row.id,
        "name": row.name,
        "price": str(row.price),
        "stock": row.stock,
        "available_stock": await ledger.available_stock(session, cache, product_id),
    }


async def get_hold(session: AsyncSession, hold_id: int) -> dict | None:
    hold = await holds.get_hold(session, hold_id)
    return hold_to_dict(hold) if hold else None


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    order = await orders.get_order(session, order_id)
    return order_to_dict(order) if order else None
