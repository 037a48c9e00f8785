"""
Order Lifecycle Manager

Owns checkout, payment verification, QR redemption, delivery and
cancellation. Every state write is a compare-and-swap UPDATE guarded on the
expected source state, issued before any read in its transaction, and every
stock change for a transition runs in that same transaction. Two concurrent
verifications therefore mint one token and commit stock once, and two
concurrent scans redeem once.

Collaborators are injected:
    - a session factory for the order and catalog stores
    - a payment gateway (``BasePaymentService``)
    - application settings
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from canteen.core.config import Settings, get_settings
from canteen.core.errors import (
    InsufficientStockError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PaymentVerificationFailedError,
    UpstreamUnavailableError,
)
from canteen.models import LifecycleState, Order, OrderLineItem, PaymentState
from canteen.services.accounts import AccountRepository
from canteen.services.catalog import CatalogRepository
from canteen.services.orders.lifecycle import Transition, plan_transition
from canteen.services.payment.base import BasePaymentService, PaymentResult, to_minor_units

logger = logging.getLogger(__name__)

PLACEHOLDER_HANDLE_PREFIX = "mock_order_"


def is_placeholder_handle(handle: str) -> bool:
    """True for handles minted locally while the gateway was unavailable."""
    return handle.startswith(PLACEHOLDER_HANDLE_PREFIX)


@dataclass(frozen=True)
class LineRequest:
    """One requested cart line."""
    catalog_item_id: int
    quantity: int


@dataclass
class CheckoutResult:
    """
    What the caller needs to complete payment externally.

    Attributes:
        order: the persisted order, in ``pending_payment``
        payment_handle: gateway handle (or local placeholder) to pay against
        amount_minor: total in the smallest currency unit
        currency: currency code
        degraded: True when the gateway was unavailable and the handle is
            a local placeholder
        client_secret: gateway client secret, when the provider issues one
    """
    order: Order
    payment_handle: str
    amount_minor: int
    currency: str
    degraded: bool = False
    client_secret: Optional[str] = None


class OrderLifecycleManager:
    """Order state machine, stock commit/restore and QR token issuance."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payment_service: BasePaymentService,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self._payments = payment_service
        self._settings = settings or get_settings()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def checkout(
        self,
        owner_id: int,
        requested_lines: Iterable[LineRequest],
    ) -> CheckoutResult:
        """
        Snapshot the cart, obtain a payment handle and persist the order.

        Stock is checked here but only committed by ``verify_payment``, so
        abandoned carts never hold inventory.
        """
        lines = list(requested_lines)
        if not lines:
            raise InvalidRequestError("Please provide items")
        if any(line.quantity < 1 for line in lines):
            raise InvalidRequestError("Quantity must be at least 1")

        requested_totals: dict[int, int] = {}
        for line in lines:
            requested_totals[line.catalog_item_id] = (
                requested_totals.get(line.catalog_item_id, 0) + line.quantity
            )

        async with self._session_factory() as session:
            if await AccountRepository(session).find_by_id(owner_id) is None:
                raise NotFoundError("Account", owner_id)

            catalog = CatalogRepository(session)
            items = {}
            for item_id, quantity in requested_totals.items():
                item = await catalog.find_by_id(item_id)
                if item is None:
                    raise NotFoundError("Menu item", item_id)
                if quantity > item.stock_count:
                    raise InsufficientStockError(item.name, quantity, item.stock_count)
                items[item_id] = item

        line_items = [
            OrderLineItem(
                position=position,
                catalog_item_id=line.catalog_item_id,
                display_name=items[line.catalog_item_id].name,
                quantity=line.quantity,
                unit_price=Decimal(items[line.catalog_item_id].unit_price),
            )
            for position, line in enumerate(lines)
        ]
        total = sum((li.unit_price * li.quantity for li in line_items), Decimal("0"))

        currency = self._settings.payment_currency
        degraded = False
        client_secret = None
        try:
            payment = await self._request_payment_intent(
                total, currency, {"owner_id": str(owner_id)}
            )
            handle = payment.payment_intent_id
            client_secret = (payment.metadata or {}).get("client_secret")
        except UpstreamUnavailableError as e:
            handle = f"{PLACEHOLDER_HANDLE_PREFIX}{uuid.uuid4().hex}"
            degraded = True
            logger.warning(f"Checkout degraded, using placeholder handle {handle}: {e.message}")

        order = Order(
            owner_id=owner_id,
            total_amount=total,
            payment_reference=handle,
            payment_state=PaymentState.PENDING,
            lifecycle_state=LifecycleState.PENDING_PAYMENT,
            version=1,
            line_items=line_items,
        )
        async with self._session_factory.begin() as session:
            session.add(order)

        logger.info(
            f"Order #{order.id} checked out by account #{owner_id}: "
            f"{len(line_items)} line(s), total {total} {currency.upper()}"
        )

        return CheckoutResult(
            order=order,
            payment_handle=handle,
            amount_minor=to_minor_units(float(total)),
            currency=currency,
            degraded=degraded,
            client_secret=client_secret,
        )

    async def _request_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any],
    ) -> PaymentResult:
        """
        Ask the gateway for a payment handle within the configured timeout.

        Raises:
            UpstreamUnavailableError: timeout, transport failure or refusal
        """
        try:
            result = await asyncio.wait_for(
                self._payments.create_payment_intent(
                    float(amount), currency=currency, metadata=metadata
                ),
                timeout=self._settings.payment_gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError("Payment gateway timed out") from e
        except Exception as e:
            raise UpstreamUnavailableError(f"Payment gateway error: {e}") from e

        if not result.success or not result.payment_intent_id:
            raise UpstreamUnavailableError(
                result.error_message or "Payment gateway refused the request"
            )
        return result

    async def refresh_payment_handle(self, order_id: int) -> CheckoutResult:
        """
        Replace a placeholder handle with a real gateway handle.

        Leaves the order untouched (and reports ``degraded``) if the gateway
        is still unavailable.
        """
        async with self._session_factory() as session:
            order = await self._load(session, Order.id == order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if (
            order.lifecycle_state != LifecycleState.PENDING_PAYMENT
            or order.payment_state != PaymentState.PENDING
        ):
            raise InvalidStateError(
                order.lifecycle_state.value,
                f"Order is {order.lifecycle_state.value}; payment {order.payment_state.value}",
            )
        if not is_placeholder_handle(order.payment_reference):
            raise InvalidStateError(
                order.lifecycle_state.value,
                "Order already has a gateway payment handle",
            )

        currency = self._settings.payment_currency
        amount_minor = to_minor_units(float(order.total_amount))
        try:
            payment = await self._request_payment_intent(
                order.total_amount, currency, {"order_id": str(order.id)}
            )
        except UpstreamUnavailableError as e:
            logger.warning(f"Order #{order.id}: gateway still unavailable - {e.message}")
            return CheckoutResult(order, order.payment_reference, amount_minor, currency, degraded=True)

        old_handle = order.payment_reference
        async with self._session_factory.begin() as session:
            result = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.payment_reference == old_handle,
                    Order.lifecycle_state == LifecycleState.PENDING_PAYMENT,
                    Order.payment_state == PaymentState.PENDING,
                )
                .values(payment_reference=payment.payment_intent_id, version=Order.version + 1)
                .execution_options(synchronize_session=False)
            )
            order = await self._load(session, Order.id == order_id)
            if result.rowcount != 1:
                raise InvalidStateError(
                    order.lifecycle_state.value,
                    "Order changed while its payment handle was refreshed",
                )

        logger.info(f"Order #{order.id}: handle {old_handle} replaced by {order.payment_reference}")
        return CheckoutResult(
            order=order,
            payment_handle=order.payment_reference,
            amount_minor=amount_minor,
            currency=currency,
            client_secret=(payment.metadata or {}).get("client_secret"),
        )

    # =========================================================================
    # PAYMENT VERIFICATION
    # =========================================================================

    async def verify_payment(
        self,
        payment_handle: str,
        payment_id: str,
        signature: str,
    ) -> Order:
        """
        Confirm payment, activate the order, mint its token and commit stock.

        A retry for an order that already passed verification returns it
        unchanged, unless the order has since been cancelled. If stock can
        no longer cover the order, nothing is applied, the payment is marked
        failed and ``InsufficientStockError`` is raised.
        """
        if self._settings.signature_bypass_active:
            logger.warning(f"Signature check bypassed for {payment_handle}")
        elif not self._payments.verify_payment_signature(payment_handle, payment_id, signature):
            logger.warning(f"Payment verification failed for {payment_handle}")
            raise PaymentVerificationFailedError()

        transition = plan_transition(
            LifecycleState.PENDING_PAYMENT, LifecycleState.ACTIVE, self._now()
        )
        by_handle = Order.payment_reference == payment_handle

        try:
            async with self._session_factory.begin() as session:
                claimed = await self._compare_and_swap(
                    session,
                    by_handle,
                    transition,
                    Order.payment_state == PaymentState.PENDING,
                    Order.redemption_token.is_(None),
                    gateway_payment_id=payment_id,
                )
                order = await self._load(session, by_handle)
                if order is None:
                    raise NotFoundError("Order with payment reference", payment_handle)

                if not claimed:
                    if (
                        order.payment_state == PaymentState.COMPLETED
                        and order.lifecycle_state != LifecycleState.CANCELLED
                    ):
                        logger.info(f"Order #{order.id} already verified")
                        return order
                    raise InvalidStateError(
                        order.lifecycle_state.value,
                        f"Order is {order.lifecycle_state.value}; "
                        f"payment {order.payment_state.value}",
                    )

                await self._move_stock(session, order, transition.stock_direction)
        except InsufficientStockError:
            settled = await self._mark_payment_failed(payment_handle, payment_id)
            if settled is not None:
                logger.info(f"Order #{settled.id} was verified concurrently")
                return settled
            raise

        logger.info(f"Order #{order.id} activated, redemption token issued")
        return order

    async def _mark_payment_failed(
        self,
        payment_handle: str,
        payment_id: str,
    ) -> Optional[Order]:
        """
        Move a still-pending payment to ``failed``.

        Returns the order instead if another verification activated it after
        the stock check rolled back; returns None otherwise.
        """
        by_handle = Order.payment_reference == payment_handle
        async with self._session_factory.begin() as session:
            result = await session.execute(
                update(Order)
                .where(
                    by_handle,
                    Order.lifecycle_state == LifecycleState.PENDING_PAYMENT,
                    Order.payment_state == PaymentState.PENDING,
                )
                .values(
                    payment_state=PaymentState.FAILED,
                    gateway_payment_id=payment_id,
                    version=Order.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                order = await self._load(session, by_handle)
                if (
                    order is not None
                    and order.payment_state == PaymentState.COMPLETED
                    and order.lifecycle_state != LifecycleState.CANCELLED
                ):
                    return order
                return None
        logger.warning(f"Payment {payment_id} for {payment_handle} marked failed: stock exhausted")
        return None

    # =========================================================================
    # REDEMPTION & FULFILMENT
    # =========================================================================

    async def scan(self, redemption_token: str) -> Order:
        """Redeem a QR token at the counter; succeeds once per token."""
        transition = plan_transition(
            LifecycleState.ACTIVE, LifecycleState.SCANNED, self._now()
        )
        by_token = Order.redemption_token == redemption_token

        async with self._session_factory.begin() as session:
            swapped = await self._compare_and_swap(session, by_token, transition)
            order = await self._load(session, by_token)
            if order is None:
                raise NotFoundError("Order for QR code", redemption_token)
            if not swapped:
                raise InvalidStateError(order.lifecycle_state.value)

        logger.info(f"Order #{order.id} scanned")
        return order

    async def deliver(self, order_id: int) -> Order:
        """Hand over a scanned order."""
        transition = plan_transition(
            LifecycleState.SCANNED, LifecycleState.DELIVERED, self._now()
        )
        by_id = Order.id == order_id

        async with self._session_factory.begin() as session:
            swapped = await self._compare_and_swap(session, by_id, transition)
            order = await self._load(session, by_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            if not swapped:
                raise InvalidStateError(
                    order.lifecycle_state.value,
                    f"Must scan before delivery; order is {order.lifecycle_state.value}",
                )

        logger.info(f"Order #{order.id} delivered")
        return order

    async def cancel(self, order_id: int) -> Order:
        """
        Cancel a pending or active order.

        Stock goes back to the catalog only if the order had been activated;
        cancelling an unpaid order leaves stock alone.
        """
        now = self._now()
        by_id = Order.id == order_id

        async with self._session_factory.begin() as session:
            # Pending first: a failed pending swap means the order can only
            # have moved forward, so the active attempt sees a settled state.
            for source in (LifecycleState.PENDING_PAYMENT, LifecycleState.ACTIVE):
                transition = plan_transition(source, LifecycleState.CANCELLED, now)
                if await self._compare_and_swap(session, by_id, transition):
                    order = await self._load(session, by_id)
                    await self._move_stock(session, order, transition.stock_direction)
                    break
            else:
                order = await self._load(session, by_id)
                if order is None:
                    raise NotFoundError("Order", order_id)
                raise InvalidStateError(
                    order.lifecycle_state.value,
                    f"Cannot cancel an order that is {order.lifecycle_state.value}",
                )

        logger.info(f"Order #{order.id} cancelled from {source.value}")
        return order

    async def expire_pending_orders(self, older_than: timedelta) -> int:
        """
        Cancel unpaid orders created before ``now - older_than``.

        Returns:
            int: number of orders cancelled
        """
        now = self._now()
        transition = plan_transition(
            LifecycleState.PENDING_PAYMENT, LifecycleState.CANCELLED, now
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(
                update(Order)
                .where(
                    Order.lifecycle_state == transition.source,
                    Order.created_at < now - older_than,
                )
                .values(
                    lifecycle_state=transition.target,
                    version=Order.version + 1,
                    **transition.changes,
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info(f"Expired {result.rowcount} unpaid order(s)")
        return result.rowcount

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_order(self, order_id: int) -> Order:
        async with self._session_factory() as session:
            order = await self._load(session, Order.id == order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def list_orders(self, owner_id: Optional[int] = None) -> list[Order]:
        """Newest first, optionally limited to one owner."""
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        if owner_id is not None:
            query = query.where(Order.owner_id == owner_id)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    async def _load(session: AsyncSession, criterion) -> Optional[Order]:
        result = await session.execute(
            select(Order).where(criterion).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _compare_and_swap(
        session: AsyncSession,
        criterion,
        transition: Transition,
        *conditions,
        **extra_values: Any,
    ) -> bool:
        """Apply ``transition`` only if the order is still in its source state."""
        result = await session.execute(
            update(Order)
            .where(criterion, Order.lifecycle_state == transition.source, *conditions)
            .values(
                lifecycle_state=transition.target,
                version=Order.version + 1,
                **transition.changes,
                **extra_values,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def _move_stock(session: AsyncSession, order: Order, direction: int) -> None:
        """Commit (-1) or return (+1) every line quantity, inside the caller's transaction."""
        if direction == 0:
            return
        catalog = CatalogRepository(session)
        for line in order.line_items:
            try:
                await catalog.adjust_stock(line.catalog_item_id, direction * line.quantity)
            except NotFoundError:
                if direction < 0:
                    raise InsufficientStockError(line.display_name, line.quantity, 0)
                logger.warning(
                    f"Order #{order.id}: menu item #{line.catalog_item_id} no longer "
                    f"exists, {line.quantity} unit(s) not restocked"
                )
