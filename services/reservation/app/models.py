"""
Reservation Service — レコードモデル

テーブルの行を pydantic モデルとして扱う。
状態の判定（Hold の有効性など）はここに置き、状態の変更は
ledger / holds / orders の各モジュールがストアに対して行う。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """
    注文の状態遷移:
        PENDING → PAID       (決済成功)
        PENDING → CANCELLED  (決済失敗 = 在庫を戻す)
        PAID    → CANCELLED  (後から失敗通知が届いた場合)
    CANCELLED は終端。
    """

    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*")
    @classmethod
    def _as_utc(cls, value: Any) -> Any:
        # SQLite はタイムゾーンを保持しないので UTC とみなす
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Product(Record):
    id: int
    name: str
    price: Decimal
    stock: int


class Hold(Record):
    id: int
    product_id: int
    quantity: int
    expires_at: datetime
    consumed: bool = False
    created_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_valid(self, now: datetime | None = None) -> bool:
        """未消費かつ期限内なら注文に変換できる。"""
        return not self.consumed and not self.is_expired(now)


class Order(Record):
    id: int
    hold_id: int | None = None
    product_id: int
    quantity: int
    total_price: Decimal
    status: OrderStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WebhookEvent(Record):
    id: int
    idempotency_key: str
    order_id: int | None
    status: str
    payload: dict[str, Any]
    processed_at: datetime | None = None


class WebhookResult(BaseModel):
    processed: bool
    duplicate: bool
    order_id: int | None
    status: str
