"""Pytest configuration and fixtures."""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from app.cache import InMemoryCache
from app.db import holds, metadata, orders, products, webhook_events
from app.metrics import MetricsLogger
from app.models import Hold, Order, Product, utcnow


class RecordingCache(InMemoryCache):
    """In-memory cache that remembers every forgotten key."""

    def __init__(self) -> None:
        super().__init__()
        self.forgotten: list[str] = []

    async def forget(self, key: str) -> None:
        self.forgotten.append(key)
        await super().forget(key)


class RecordingMetrics(MetricsLogger):
    """Metrics sink that remembers every emitted event."""

    def __init__(self) -> None:
        super().__init__(redis=None)
        self.events: list[tuple[str, BaseModel]] = []

    async def emit(self, metric: str, event: BaseModel, level: int = logging.INFO) -> None:
        self.events.append((metric, event))
        await super().emit(metric, event, level)

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, metric: str) -> list[BaseModel]:
        return [event for name, event in self.events if name == metric]


class Store:
    """Direct table access for arranging and asserting test state."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    async def add_product(
        self,
        stock: int,
        price: str = "50.00",
        name: str = "Test Product",
    ) -> Product:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    insert(products).values(
                        name=name,
                        price=Decimal(price),
                        stock=stock,
                        created_at=utcnow(),
                        updated_at=utcnow(),
                    )
                )
                product_id = result.inserted_primary_key[0]
        return await self.product(product_id)

    async def add_hold(
        self,
        product_id: int,
        quantity: int,
        expires_in: timedelta = timedelta(minutes=10),
        consumed: bool = False,
    ) -> Hold:
        """Insert a hold row without touching stock."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    insert(holds).values(
                        product_id=product_id,
                        quantity=quantity,
                        expires_at=utcnow() + expires_in,
                        consumed=consumed,
                        created_at=utcnow(),
                    )
                )
                hold_id = result.inserted_primary_key[0]
        return await self.hold(hold_id)

    async def product(self, product_id: int) -> Product:
        async with self.session_factory() as session:
            row = (await session.execute(select(products).where(products.c.id == product_id))).first()
        return Product.model_validate(row)

    async def hold(self, hold_id: int) -> Hold:
        async with self.session_factory() as session:
            row = (await session.execute(select(holds).where(holds.c.id == hold_id))).first()
        return Hold.model_validate(row)

    async def order(self, order_id: int) -> Order:
        async with self.session_factory() as session:
            row = (await session.execute(select(orders).where(orders.c.id == order_id))).first()
        return Order.model_validate(row)

    async def expire_hold(self, hold_id: int, ago: timedelta = timedelta(minutes=5)) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(holds)
                    .where(holds.c.id == hold_id)
                    .values(expires_at=utcnow() - ago)
                )

    async def set_stock(self, product_id: int, stock: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(products).where(products.c.id == product_id).values(stock=stock)
                )

    async def count(self, table) -> int:
        async with self.session_factory() as session:
            return (await session.execute(select(func.count()).select_from(table))).scalar_one()

    async def webhook_event_count(self) -> int:
        return await self.count(webhook_events)

    async def order_count(self) -> int:
        return await self.count(orders)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh SQLite database for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservation.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory: async_sessionmaker) -> Store:
    return Store(session_factory)


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest_asyncio.fixture
async def product(store: Store) -> Product:
    """A product with stock=10 and price=50.00."""
    return await store.add_product(stock=10, price="50.00")
