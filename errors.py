"""
Error taxonomy for the marketplace core.

Every error carries a machine readable ``kind`` and the HTTP status the API
layer answers with. Extra keyword arguments are passed through to the response
body so callers can tell, for example, which product ran out of stock.
"""
from typing import Any, Dict


class MarketplaceError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, **self.extra}


class NotFound(MarketplaceError):
    kind = "not_found"
    status_code = 404


class Forbidden(MarketplaceError):
    kind = "forbidden"
    status_code = 403


class NotConnected(Forbidden):
    kind = "not_connected"


class Conflict(MarketplaceError):
    kind = "conflict"
    status_code = 409


class InvalidQuantity(MarketplaceError):
    kind = "invalid_quantity"
    status_code = 400


class BelowMinimumOrder(InvalidQuantity):
    kind = "below_minimum_order"


class InsufficientStock(InvalidQuantity):
    kind = "insufficient_stock"


class ProductUnavailable(MarketplaceError):
    kind = "product_unavailable"
    status_code = 400


class EmptyCart(MarketplaceError):
    kind = "empty_cart"
    status_code = 400


class InvalidStateTransition(MarketplaceError):
    kind = "invalid_state_transition"
    status_code = 409


class PartialPlacement(MarketplaceError):
    """Some orders of a multi-wholesaler checkout were created, a later one failed."""

    kind = "partial_placement"
    status_code = 409


class ValidationFailed(MarketplaceError):
    kind = "validation_failed"
    status_code = 400


class AuthenticationFailed(MarketplaceError):
    kind = "authentication_failed"
    status_code = 401


class UpstreamUnavailable(MarketplaceError):
    kind = "upstream_unavailable"
    status_code = 503
