"""
Reservation Service — 業務エラー

コア処理はこれらの例外を送出し、API 層が HTTP ステータスに変換する。
"""


class ReservationError(Exception):
    status_code = 422


class InvalidInput(ReservationError):
    """変更前に弾かれる入力エラー（数量が 0 以下など）"""


class MalformedWebhookPayload(InvalidInput):
    """注文が存在しない Webhook に product_id / quantity が無い"""


class ProductNotFound(ReservationError):
    status_code = 404

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class HoldNotFound(ReservationError):
    status_code = 404

    def __init__(self, hold_id: int) -> None:
        super().__init__(f"Hold {hold_id} not found")
        self.hold_id = hold_id


class OrderNotFound(ReservationError):
    status_code = 404

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InsufficientStock(ReservationError):
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock: requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class HoldCreationFailed(InsufficientStock):
    """在庫競合により Hold を作成できなかった"""


class HoldInvalid(ReservationError):
    status_code = 409

    def __init__(self, hold_id: int) -> None:
        super().__init__(f"Hold {hold_id} is invalid or expired")
        self.hold_id = hold_id


class HoldAlreadyConsumed(ReservationError):
    status_code = 409

    def __init__(self, hold_id: int) -> None:
        super().__init__(f"Hold {hold_id} has already been consumed")
        self.hold_id = hold_id
