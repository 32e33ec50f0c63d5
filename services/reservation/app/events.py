"""
Reservation Service — 計測イベント定義

予約ドメインで発生する観測用イベント。
状態の正しさには関与しない（fire-and-forget）。
"""

from datetime import datetime

from pydantic import BaseModel


class HoldCreated(BaseModel):
    """Hold が作成された"""
    hold_id: int
    product_id: int
    quantity: int
    timestamp: datetime


class HoldExpired(BaseModel):
    """期限切れの Hold が在庫を解放した"""
    hold_id: int
    product_id: int
    quantity: int
    timestamp: datetime


class ExpiryBatch(BaseModel):
    """期限切れスイープ 1 回分の結果"""
    candidates: int
    expired_count: int
    duration_ms: float
    timestamp: datetime


class WebhookProcessed(BaseModel):
    """決済 Webhook を処理した（重複も含む）"""
    idempotency_key: str
    is_duplicate: bool
    timestamp: datetime


class StockContention(BaseModel):
    """在庫不足で減算が失敗した"""
    product_id: int
    requested: int
    available: int
    attempts: int
    timestamp: datetime
