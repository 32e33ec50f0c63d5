"""
Reservation Service — 有効在庫キャッシュ

get / set / forget だけを持つ小さな抽象。
本番は Redis、テストやローカル実行ではプロセス内の辞書を使う。
キャッシュはあくまで参考値で、整合性の根拠にはしない。
Redis の障害はミス / 何もしないとして扱い、在庫操作を止めない。
"""

import logging
import time
from collections.abc import Callable
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def available_stock_key(product_id: int) -> str:
    return f"product:{product_id}:available_stock"


class Cache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: float) -> None: ...

    async def forget(self, key: str) -> None: ...


class RedisCache:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def get(self, key: str) -> str | None:
        try:
            return await self.redis.get(key)
        except RedisError:
            logger.warning("Cache get failed for %s; treating as miss", key, exc_info=True)
            return None

    async def set(self, key: str, value: str, ttl: float) -> None:
        try:
            await self.redis.set(key, value, px=max(1, int(ttl * 1000)))
        except RedisError:
            logger.warning("Cache set failed for %s", key, exc_info=True)

    async def forget(self, key: str) -> None:
        # 消せなかった値も TTL で自然に消える
        try:
            await self.redis.delete(key)
        except RedisError:
            logger.warning("Cache forget failed for %s", key, exc_info=True)


class InMemoryCache:
    """単一プロセス用のキャッシュ。"""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def forget(self, key: str) -> None:
        self._entries.pop(key, None)
