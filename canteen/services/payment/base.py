"""
Payment Gateway Abstract Base Class

Defines the interface contract for all payment gateway implementations.
Both MockPaymentService and StripePaymentService implement these methods,
ensuring consistent behavior regardless of which gateway is active.

Checkout asks the gateway for a payment handle; the customer pays
externally and comes back with a payment id plus a signature. The signature
is an HMAC-SHA256 over ``"<handle>|<payment_id>"`` keyed with the shared
signing secret, and is checked here for every provider.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - New providers can be added without modifying existing code
    - Facilitates testing with mock implementations
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class PaymentResult:
    """
    Standardized result from a payment intent request.

    Attributes:
        success: Whether the gateway accepted the request
        payment_intent_id: Handle the customer pays against
        amount: Amount requested in major units
        amount_minor: Amount requested in the smallest currency unit
        currency: Currency code (e.g., "inr")
        error_message: Error description if the request failed
        error_code: Machine-readable error code
        response_time_ms: Time taken by the gateway
        metadata: Additional data from the payment provider
    """
    success: bool
    payment_intent_id: Optional[str] = None
    amount: Optional[float] = None
    amount_minor: Optional[int] = None
    currency: str = "inr"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None


def to_minor_units(amount: float) -> int:
    """
    Convert a major-unit amount to the gateway's smallest unit.

    Gateways expect amounts in the smallest currency unit (paise, cents).
    """
    return int(round(amount * 100))


class BasePaymentService(ABC):
    """
    Abstract base class for payment gateways.

    Subclasses supply the provider-specific intent creation and health
    check; confirmation signatures are shared.

    Example:
        >>> service = get_payment_service()  # Returns Mock or Stripe
        >>> result = await service.create_payment_intent(amount=40.0)
        >>> if result.success:
        ...     print(f"Pay against: {result.payment_intent_id}")
    """

    def __init__(self, signing_secret: str):
        if not signing_secret:
            raise ValueError("A payment signing secret is required")
        self._signing_secret = signing_secret.encode("utf-8")

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the payment provider.

        Returns:
            str: Provider name (e.g., "mock", "stripe")
        """
        pass

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: float,
        currency: str = "inr",
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Create a payment intent the customer completes externally.

        Args:
            amount: Amount in major units
            currency: Currency code
            metadata: Additional data to attach

        Returns:
            PaymentResult: Carries the payment handle on success
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the payment gateway.

        Returns:
            bool: True if the gateway is reachable and operational
        """
        pass

    def sign_payment(self, payment_handle: str, payment_id: str) -> str:
        """Signature the gateway attaches to a confirmed payment."""
        message = f"{payment_handle}|{payment_id}".encode("utf-8")
        return hmac.new(self._signing_secret, message, hashlib.sha256).hexdigest()

    def verify_payment_signature(
        self,
        payment_handle: str,
        payment_id: str,
        signature: str,
    ) -> bool:
        """
        Check a confirmation signature in constant time.

        Returns:
            bool: True only if ``signature`` was produced with the shared secret
        """
        if not payment_handle or not payment_id or not signature:
            return False
        expected = self.sign_payment(payment_handle, payment_id)
        return hmac.compare_digest(expected, signature)
