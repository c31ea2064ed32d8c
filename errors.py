"""
Domain errors raised by the pricing, coupon and cart layers.

Every error carries the HTTP status the web layer answers with, so routes
can let them propagate and a single exception handler renders them.
"""


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(StoreError):
    pass


class ProductNotFoundOrInactive(StoreError):
    pass


class InsufficientStock(StoreError):
    def __init__(self, title: str, available: int):
        super().__init__(f"Insufficient stock for {title}. Available: {available}")
        self.title = title
        self.available = available


class InvalidCoupon(StoreError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NotFound(StoreError):
    status_code = 404


class Conflict(StoreError):
    status_code = 409
