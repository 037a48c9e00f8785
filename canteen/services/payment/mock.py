"""
Mock Payment Gateway Implementation

Simulates gateway behavior without making real API calls.
Used in development mode (ENV_MODE=development) to:
    - Test the complete checkout/verify/scan flow locally
    - Run load simulations without incurring costs
    - Develop without internet connectivity

Behavior:
    - Simulates response times (configurable latency window)
    - Randomly refuses intents at ``failure_rate`` (exercises the
      degraded checkout path)
    - Generates gateway-like IDs (order_mock_xxx, pay_mock_xxx)
    - Can play the customer's side of a payment via ``complete_payment``
"""

import asyncio
import random
import uuid
import logging
from typing import Optional

from canteen.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    to_minor_units,
)

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment gateway.

    Attributes:
        failure_rate: Probability of a simulated gateway error (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> service = MockPaymentService("secret", failure_rate=0.0)
        >>> result = await service.create_payment_intent(40.0)
        >>> payment_id, signature = service.complete_payment(result.payment_intent_id)
    """

    # Simulated failure reasons
    ERROR_REASONS = [
        ("gateway_timeout", "The gateway did not answer in time."),
        ("server_error", "The gateway reported an internal error."),
        ("rate_limited", "Too many requests to the gateway."),
    ]

    def __init__(
        self,
        signing_secret: str,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        super().__init__(signing_secret)
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max(max_latency, min_latency)

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{self.max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_payment_intent_id(self) -> str:
        return f"order_mock_{uuid.uuid4().hex[:24]}"

    def _generate_payment_id(self) -> str:
        return f"pay_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        latency = random.uniform(self.min_latency, self.max_latency)
        if latency > 0:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def create_payment_intent(
        self,
        amount: float,
        currency: str = "inr",
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """Simulate creating a payment intent."""
        latency_ms = await self._simulate_latency()

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
                response_time_ms=latency_ms,
            )

        if self._should_fail():
            error_code, error_message = random.choice(self.ERROR_REASONS)
            logger.debug(f"Mock: Intent refused - {error_code}")
            return PaymentResult(
                success=False,
                amount=amount,
                currency=currency,
                error_message=error_message,
                error_code=error_code,
                response_time_ms=latency_ms,
            )

        payment_intent_id = self._generate_payment_intent_id()

        logger.debug(f"Mock: Created payment intent {payment_intent_id}")

        return PaymentResult(
            success=True,
            payment_intent_id=payment_intent_id,
            amount=amount,
            amount_minor=to_minor_units(amount),
            currency=currency,
            response_time_ms=latency_ms,
            metadata={"mock": True, **(metadata or {})},
        )

    def complete_payment(self, payment_handle: str) -> tuple[str, str]:
        """
        Play the customer's side: pay against ``payment_handle``.

        Returns:
            tuple: (payment_id, signature) as the gateway would hand back
        """
        payment_id = self._generate_payment_id()
        return payment_id, self.sign_payment(payment_handle, payment_id)

    async def health_check(self) -> bool:
        """The mock gateway is always available."""
        logger.debug("Mock: Health check passed")
        return True
