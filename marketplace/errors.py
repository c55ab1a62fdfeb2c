"""
Domain error taxonomy. Each error knows the status code and label the
response envelope reports for it.
"""
from typing import Any, Optional


class MarketplaceError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details


class ValidationError(MarketplaceError):
    status_code = 400
    error = "Validation failed"


class AuthorizationError(MarketplaceError):
    status_code = 403
    error = "Forbidden"


class NotFound(MarketplaceError):
    status_code = 404
    error = "Not found"

    def __init__(self, collection: str, entity_id: str):
        super().__init__(f"{collection} {entity_id} not found", {"collection": collection, "id": entity_id})
        self.collection = collection
        self.entity_id = entity_id


class ProductNotFound(NotFound):
    error = "Product not found"

    def __init__(self, product_id: str):
        super().__init__("products", product_id)


class InsufficientStock(MarketplaceError):
    status_code = 409
    error = "Insufficient stock"

    def __init__(self, product_id: str, requested: int, available: Optional[int] = None):
        details = {"productId": product_id, "requested": requested}
        if available is not None:
            details["available"] = available
        super().__init__(f"Insufficient stock for product {product_id}", details)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StorageUnavailable(MarketplaceError):
    status_code = 503
    error = "Storage unavailable"
