"""
Payment Gateway Factory

Provides a single entry point for obtaining a payment gateway instance.
The factory lets the HTTP layer stay agnostic about which implementation
is in use; the order lifecycle manager receives the instance explicitly.

Usage:
    from canteen.services.payment import get_payment_service

    # Returns MockPaymentService or StripePaymentService based on ENV_MODE
    payment_service = get_payment_service()

    result = await payment_service.create_payment_intent(40.0)

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)
"""

import logging
from functools import lru_cache

from canteen.core.config import get_settings
from canteen.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    to_minor_units,
)
from canteen.services.payment.mock import MockPaymentService
from canteen.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment gateway instance.

    The instance is cached so every request shares one gateway client.

    Raises:
        ValueError: If staging/production but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            signing_secret=settings.payment_signing_secret,
            failure_rate=settings.mock_payment_failure_rate,
            min_latency=settings.mock_payment_min_latency,
            max_latency=settings.mock_payment_max_latency,
        )
    else:
        logger.info(
            f"Payment Service: Using StripePaymentService "
            f"({settings.env_mode.value} mode)"
        )
        return StripePaymentService(settings)


def reset_payment_service() -> None:
    """
    Clear the cached payment gateway instance.

    The next call to get_payment_service() will create a new instance.
    """
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "to_minor_units",
    "BasePaymentService",
    "PaymentResult",
    "MockPaymentService",
    "StripePaymentService",
]
