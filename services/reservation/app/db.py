"""
Reservation Service — テーブル定義とトランザクション境界

すべての整合性はストア側で担保する:
  - 在庫の減算は行ロック (SELECT ... FOR UPDATE)
  - Hold の消費は条件付き UPDATE
  - Webhook の重複排除は idempotency_key の一意制約
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncSession

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

holds = Table(
    "holds",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("consumed", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True)),
    CheckConstraint("quantity > 0", name="ck_holds_quantity_positive"),
    Index("ix_holds_consumed_expires_at", "consumed", "expires_at"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True),
    # 1 つの Hold から作られる注文は高々 1 件
    Column("hold_id", Integer, ForeignKey("holds.id"), nullable=True, unique=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("total_price", Numeric(12, 2), nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("quantity > 0", name="ck_orders_quantity_positive"),
)

webhook_events = Table(
    "webhook_events",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("idempotency_key", String(255), nullable=False, unique=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=True),
    Column("status", String(16), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("processed_at", DateTime(timezone=True)),
)


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    トランザクション境界。

    呼び出し元がすでにトランザクション中ならそれに参加する（コミットは
    呼び出し元の責任）。そうでなければ新しく開始し、例外時はロールバックする。
    """
    if session.in_transaction():
        yield session
        return
    async with session.begin():
        yield session
