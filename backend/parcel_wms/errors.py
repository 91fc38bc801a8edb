"""Typed workflow errors.

Every error carries a machine-readable ``code``, the HTTP status the API
layer answers with, and optional structured ``context`` that is merged into
the response body (for example the estimated fee an operator must confirm).
"""

from typing import Any


class WmsError(Exception):
    code = "WMS_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationFailed(WmsError):
    code = "VALIDATION_FAILED"


class CatalogMissing(WmsError):
    """SKU is not registered in the client's product catalog."""

    code = "E4001"
    status_code = 422

    def __init__(self, sku: str, client: str):
        super().__init__(f"SKU {sku} 未在货主 {client} 的商品资料中维护", sku=sku, client=client)
        self.sku = sku
        self.client = client


class DuplicateTracking(WmsError):
    code = "DUPLICATE_TRACKING"
    status_code = 409


class OrphanedOrder(WmsError):
    """An inbound order exists for the tracking number but no package row does."""

    code = "ORPHANED_ORDER"
    status_code = 409


class ConfirmationRequired(WmsError):
    code = "CONFIRMATION_REQUIRED"
    status_code = 409


class NotFound(WmsError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidState(WmsError):
    code = "INVALID_STATE"


class StockInsufficient(WmsError):
    code = "STOCK_INSUFFICIENT"


class PermissionDenied(WmsError):
    code = "PERMISSION_DENIED"
    status_code = 403
