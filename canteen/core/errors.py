"""
Domain Errors

Every failure the order lifecycle can report to a caller. The HTTP layer maps
each class to a status code through ``status_code``; anything that is not a
``CanteenError`` is treated as an internal failure.
"""

from typing import Optional


class CanteenError(Exception):
    """Base class for expected, caller-facing failures."""

    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(CanteenError):
    """Malformed input, e.g. an empty cart."""

    status_code = 400


class NotFoundError(CanteenError):
    """A referenced order, menu item or account does not exist."""

    status_code = 404

    def __init__(self, entity: str, identifier: object):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class InsufficientStockError(CanteenError):
    """Stock cannot cover the requested quantity."""

    status_code = 409

    def __init__(
        self,
        item_name: str,
        requested: int,
        available: Optional[int] = None,
    ):
        message = f"Low stock for {item_name}: requested {requested}"
        if available is not None:
            message += f", available {available}"
        super().__init__(message)
        self.item_name = item_name
        self.requested = requested
        self.available = available


class InvalidStateError(CanteenError):
    """A lifecycle transition was attempted from the wrong state."""

    status_code = 409

    def __init__(self, current_state: str, message: Optional[str] = None):
        super().__init__(message or f"Order is {current_state}")
        self.current_state = current_state


class PaymentVerificationFailedError(CanteenError):
    """The confirmation signature does not match the payment handle."""

    status_code = 400

    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message)


class UpstreamUnavailableError(CanteenError):
    """
    The payment gateway could not be reached or refused the request.

    Checkout recovers from this with a placeholder handle, so it never
    reaches an HTTP client.
    """

    status_code = 503
