"""
Stripe Payment Gateway Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - PAYMENT_SIGNING_SECRET shared with the confirmation relay

Security Notes:
    - Never log client secrets
    - Always verify confirmation signatures
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import stripe

from canteen.core.config import Settings, get_settings
from canteen.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    to_minor_units,
)

logger = logging.getLogger(__name__)


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment gateway.

    Creates PaymentIntents whose ids serve as order payment handles.
    The SDK is blocking, so calls run in a worker thread; this keeps the
    checkout timeout effective.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = settings or get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        super().__init__(settings.payment_signing_secret)

        stripe.api_key = settings.stripe_secret_key
        self._currency = settings.payment_currency

        logger.info("StripePaymentService initialized")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "stripe"

    def _convert_from_minor(self, amount_minor: int) -> float:
        return amount_minor / 100.0

    async def create_payment_intent(
        self,
        amount: float,
        currency: str = "inr",
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Create a PaymentIntent for client-side confirmation.

        Returns the intent id as the payment handle and the client_secret
        the frontend uses to complete the payment.
        """
        start_time = datetime.now()

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=currency or self._currency,
                metadata={"source": "canteen", **(metadata or {})},
                automatic_payment_methods={"enabled": True},
            )

            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000

            logger.info(
                f"Stripe: PaymentIntent created - {intent.id} - "
                f"status={intent.status}"
            )

            return PaymentResult(
                success=True,
                payment_intent_id=intent.id,
                amount=self._convert_from_minor(intent.amount),
                amount_minor=intent.amount,
                currency=intent.currency,
                response_time_ms=elapsed_ms,
                metadata={
                    "client_secret": intent.client_secret,
                    "status": intent.status,
                },
            )

        except stripe.AuthenticationError as e:
            logger.critical(f"Stripe: Authentication failed - {e}")

            return PaymentResult(
                success=False,
                error_message="Payment service configuration error",
                error_code="authentication_error",
            )

        except stripe.APIConnectionError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Connection error - {e}")

            return PaymentResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=elapsed_ms,
            )

        except stripe.StripeError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Failed to create PaymentIntent - {e}")

            return PaymentResult(
                success=False,
                error_message=str(e),
                error_code="stripe_error",
                response_time_ms=elapsed_ms,
            )

    async def health_check(self) -> bool:
        """
        Verify Stripe API connectivity.

        Makes a lightweight API call to verify credentials and connectivity.
        """
        try:
            await asyncio.to_thread(stripe.Account.retrieve)
            logger.debug("Stripe: Health check passed")
            return True

        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
