"""
Core module initialization.
Exports configuration, logging utilities and domain errors.
"""

from canteen.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from canteen.core.errors import (
    CanteenError,
    InvalidRequestError,
    NotFoundError,
    InsufficientStockError,
    InvalidStateError,
    PaymentVerificationFailedError,
    UpstreamUnavailableError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "CanteenError",
    "InvalidRequestError",
    "NotFoundError",
    "InsufficientStockError",
    "InvalidStateError",
    "PaymentVerificationFailedError",
    "UpstreamUnavailableError",
]
