"""Custom exceptions for marketcore.

Every error the order core raises on purpose is a subclass of
``MarketcoreError``. Each subclass carries a fixed ``kind`` tag; the HTTP
layer maps the class to a status code through ``api.ERROR_STATUS_CODES``.
"""

from typing import Any


class MarketcoreError(Exception):
    """Base exception for all marketcore errors."""

    kind = "error"

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        self.message = message
        self.detail = detail or {}
        super().__init__(message)


class ValidationError(MarketcoreError):
    """Raised for malformed or missing input, or a cart line that cannot be ordered."""

    kind = "validation"


class InsufficientStockError(MarketcoreError):
    """Raised when a product has fewer units available than requested."""

    kind = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient stock for product {product_id}: requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(
            msg,
            {"productId": product_id, "requested": requested, "available": available},
        )


class StockConflictError(MarketcoreError):
    """Raised when materializing a paid checkout fails to reserve every line."""

    kind = "stock_conflict"

    def __init__(self, payment_transaction_id: str, product_id: str, reason: str):
        self.payment_transaction_id = payment_transaction_id
        self.product_id = product_id
        super().__init__(
            f"Stock conflict for transaction {payment_transaction_id}: {reason}",
            {"paymentTransactionId": payment_transaction_id, "productId": product_id},
        )


class RateExceededError(MarketcoreError):
    """Raised by the fraud gate when an order velocity limit is reached."""

    kind = "rate_exceeded"

    def __init__(self, scope: str, limit: int, window_seconds: int):
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds
        if scope == "ip":
            msg = "Too many orders from this IP address"
        else:
            msg = "Too many orders in a short time period"
        super().__init__(
            msg, {"scope": scope, "limit": limit, "windowSeconds": window_seconds}
        )


class SignatureError(MarketcoreError):
    """Raised when a webhook or payment signature does not verify."""

    kind = "signature"


class ConflictError(MarketcoreError):
    """Raised when a state transition is not allowed from the current state."""

    kind = "conflict"


class NotFoundError(MarketcoreError):
    """Raised when a requested record doesn't exist (or isn't visible to the caller)."""

    kind = "not_found"

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource} not found: {resource_id}",
            {"resource": resource, "id": resource_id},
        )


class AuthenticationError(MarketcoreError):
    """Raised when a request carries no valid bearer token."""

    kind = "authentication"


class PermissionDeniedError(MarketcoreError):
    """Raised when an authenticated user may not perform an action."""

    kind = "permission_denied"


class GatewayError(MarketcoreError):
    """Raised when the payment gateway rejects or fails a request."""

    kind = "gateway"


class DatabaseError(MarketcoreError):
    """Raised when the document store fails underneath an operation."""

    kind = "database"


class DuplicateDocumentError(DatabaseError):
    """Raised when inserting a document whose _id already exists."""

    kind = "duplicate_document"

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(
            f"Document {doc_id} already exists in {collection}",
            {"collection": collection, "id": doc_id},
        )
