"""
Reservation Service — 注文ライフサイクル (Order Lifecycle)

注文は Hold から作るのが通常の経路。
決済 Webhook がクライアントより先に届いた場合は create_direct で
ペイロードの商品・数量から直接作る。

状態遷移:
    PENDING → PAID       (mark_as_paid)
    PENDING → CANCELLED  (cancel, 在庫を戻す)
    PAID    → CANCELLED  (cancel, 在庫を戻す)
"""

import logging

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import holds, ledger
from .cache import Cache
from .db import orders, products, transaction
from .errors import (
    HoldAlreadyConsumed,
    HoldInvalid,
    HoldNotFound,
    InvalidInput,
    OrderNotFound,
    ProductNotFound,
)
from .models import Order, OrderStatus, Product, utcnow

logger = logging.getLogger(__name__)


async def get_order(session: AsyncSession, order_id: int) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.first()
    return Order.model_validate(row) if row else None


async def find_by_hold(session: AsyncSession, hold_id: int) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.hold_id == hold_id))
    row = result.first()
    return Order.model_validate(row) if row else None


async def _load_product(session: AsyncSession, product_id: int) -> Product:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.first()
    if row is None:
        raise ProductNotFound(product_id)
    return Product.model_validate(row)


async def _insert_order(
    session: AsyncSession,
    product: Product,
    quantity: int,
    hold_id: int | None,
) -> Order:
    now = utcnow()
    result = await session.execute(
        insert(orders).values(
            hold_id=hold_id,
            product_id=product.id,
            quantity=quantity,
            # 作成時点の価格で確定させる
            total_price=product.price * quantity,
            status=OrderStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
    )
    return await get_order(session, result.inserted_primary_key[0])


async def create_from_hold(session: AsyncSession, hold_id: int) -> Order:
    """
    Hold から注文を作成する。

    同じ Hold から作られた注文があればそれを返す（クライアントの再送対策）。
    Hold が無効なら HoldInvalid、消費の競争に負けたら HoldAlreadyConsumed。
    """
    async with transaction(session):
        hold = await holds.get_hold(session, hold_id)
        if hold is None:
            raise HoldNotFound(hold_id)

        existing = await find_by_hold(session, hold_id)
        if existing is not None:
            return existing

        if not hold.is_valid():
            raise HoldInvalid(hold_id)

        product = await _load_product(session, hold.product_id)

        if not await holds.consume(session, hold):
            raise HoldAlreadyConsumed(hold_id)

        return await _insert_order(session, product, hold.quantity, hold_id=hold.id)


async def create_direct(
    session: AsyncSession,
    cache: Cache,
    product_id: int,
    quantity: int,
    hold_id: int | None = None,
) -> Order:
    """
    Hold を経由せずに注文を作成する（Webhook が先に届いた場合）。

    hold_id が有効で商品・数量が一致すればその Hold を消費して紐付ける。
    紐付けられなかった場合は、この注文の分を在庫台帳から直接減算する。
    どちらの経路でも注文 1 件につき在庫の確保はちょうど 1 回になる。

    期限切れでまだ掃除されていない Hold は紐付けないため、その分の在庫は
    スイープで戻るまで確保されたままになる。売り切れ商品ではこの減算が
    InsufficientStock で失敗し、Webhook は記録されずに失敗する。
    スイープ後の再配送で成功する。
    """
    if quantity <= 0:
        raise InvalidInput("Quantity must be positive")

    async with transaction(session):
        product = await _load_product(session, product_id)

        linked_hold_id = None
        if hold_id is not None:
            hold = await holds.get_hold(session, hold_id)
            if (
                hold is not None
                and hold.is_valid()
                and hold.product_id == product_id
                and hold.quantity == quantity
                and await holds.consume(session, hold)
            ):
                linked_hold_id = hold.id

        if linked_hold_id is None:
            if hold_id is not None:
                logger.info(
                    "Hold %s could not be linked to direct order; reserving stock for product %s",
                    hold_id,
                    product_id,
                )
            await ledger.decrement(session, cache, product_id, quantity)

        return await _insert_order(session, product, quantity, hold_id=linked_hold_id)


async def mark_as_paid(session: AsyncSession, order: Order) -> Order:
    """PENDING → PAID。支払い済みなら何もしない。キャンセル済みは終端なのでそのまま。"""
    async with transaction(session):
        result = await session.execute(
            update(orders)
            .where(
                orders.c.id == order.id,
                orders.c.status == OrderStatus.PENDING.value,
            )
            .values(status=OrderStatus.PAID.value, updated_at=utcnow())
        )
        if result.rowcount == 1:
            order.status = OrderStatus.PAID
            return order

        current = await get_order(session, order.id)
        if current is None:
            raise OrderNotFound(order.id)
        if current.status == OrderStatus.CANCELLED:
            logger.warning("Order %s is cancelled; ignoring payment success", order.id)
        return current


async def cancel(session: AsyncSession, cache: Cache, order: Order) -> Order:
    """
    注文をキャンセルし、確保していた在庫を戻す。

    キャンセル済みなら何もしない。状態の更新は CANCELLED 以外の行だけを
    対象にした条件付き UPDATE なので、並行に呼ばれても在庫を戻すのは 1 回だけ。
    """
    if order.status == OrderStatus.CANCELLED:
        return order

    async with transaction(session):
        result = await session.execute(
            update(orders)
            .where(
                orders.c.id == order.id,
                orders.c.status != OrderStatus.CANCELLED.value,
            )
            .values(status=OrderStatus.CANCELLED.value, updated_at=utcnow())
        )
        if result.rowcount == 1:
            await ledger.increment(session, cache, order.product_id, order.quantity)

    order.status = OrderStatus.CANCELLED
    return order
