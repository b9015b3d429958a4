"""Order service exceptions.

Raised by the inventory ledger, checkout coordinator and status state machine.
The API layer translates them into JSON error responses through a single
exception handler, using ``status_code`` and ``reason``.
"""


class OrderServiceError(Exception):
    status_code = 400
    reason = "order_service_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason

    def to_dict(self) -> dict:
        return {"error": self.reason, "detail": self.message}


class CheckoutError(OrderServiceError):
    """A cart line could not be turned into a reserved order line."""

    reason = "checkout_failed"

    def __init__(self, message: str = "", product_id=None):
        super().__init__(message)
        self.product_id = product_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["failing_product_id"] = self.product_id
        return payload


class ProductNotFound(CheckoutError):
    status_code = 404
    reason = "product_not_found"


class InsufficientStock(CheckoutError):
    status_code = 409
    reason = "insufficient_stock"


class InvalidQuantity(CheckoutError):
    status_code = 422
    reason = "invalid_quantity"


class OrderNotFound(OrderServiceError):
    status_code = 404
    reason = "order_not_found"


class Forbidden(OrderServiceError):
    status_code = 403
    reason = "forbidden"


class InvalidTransition(OrderServiceError):
    status_code = 409
    reason = "invalid_transition"


class StorageFailure(OrderServiceError):
    """The unit of work could not be committed; nothing was applied."""

    status_code = 503
    reason = "storage_failure"


class CheckoutTimeout(StorageFailure):
    reason = "checkout_timeout"
