import asyncio
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from canteen.core.errors import (
    InsufficientStockError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PaymentVerificationFailedError,
)
from canteen.models import LifecycleState, Order, PaymentState
from canteen.services.orders import LineRequest, OrderLifecycleManager, lifecycle

from tests.conftest import HangingPaymentService, SIGNING_SECRET, make_settings

TOKEN_PATTERN = re.compile(r"^ORD-\d{13}-[0-9a-f]{16}$")


async def paid_order(manager, pay, owner_id, lines):
    """Checkout and verify, returning the active order."""
    result = await manager.checkout(owner_id, lines)
    return await manager.verify_payment(*pay(result.payment_handle))


# =============================================================================
# FULL LIFECYCLE
# =============================================================================

async def test_order_runs_from_checkout_to_delivery(manager, pay, student, make_item, stock_of):
    a = await make_item("Masala Dosa", 10, 5)
    b = await make_item("Filter Coffee", 20, 1)

    result = await manager.checkout(student.id, [LineRequest(a.id, 2), LineRequest(b.id, 1)])

    order = result.order
    assert order.total_amount == Decimal("40")
    assert result.amount_minor == 4000
    assert result.currency == "inr"
    assert not result.degraded
    assert order.lifecycle_state == LifecycleState.PENDING_PAYMENT
    assert order.payment_state == PaymentState.PENDING
    assert order.redemption_token is None
    assert [li.display_name for li in order.line_items] == ["Masala Dosa", "Filter Coffee"]
    # checkout does not commit stock
    assert await stock_of(a.id) == 5

    order = await manager.verify_payment(*pay(result.payment_handle))

    assert order.lifecycle_state == LifecycleState.ACTIVE
    assert order.payment_state == PaymentState.COMPLETED
    assert TOKEN_PATTERN.match(order.redemption_token)
    assert await stock_of(a.id) == 3
    assert await stock_of(b.id) == 0

    order = await manager.scan(order.redemption_token)
    assert order.lifecycle_state == LifecycleState.SCANNED
    assert order.scanned_at is not None

    order = await manager.deliver(order.id)
    assert order.lifecycle_state == LifecycleState.DELIVERED
    assert order.delivered_at is not None

    with pytest.raises(InvalidStateError):
        await manager.cancel(order.id)


async def test_line_items_keep_checkout_price(manager, pay, session_factory, student, make_item):
    from canteen.services.catalog import CatalogRepository

    item = await make_item("Thali", 80, 5)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    async with session_factory() as session:
        await CatalogRepository(session).update_item(
            item.id, {"unit_price": Decimal("95"), "name": "Special Thali"}
        )

    order = await manager.get_order(result.order.id)
    assert order.line_items[0].unit_price == Decimal("80")
    assert order.line_items[0].display_name == "Thali"
    assert order.total_amount == Decimal("80")


# =============================================================================
# CHECKOUT
# =============================================================================

async def test_checkout_rejects_empty_cart(manager, student):
    with pytest.raises(InvalidRequestError):
        await manager.checkout(student.id, [])


async def test_checkout_rejects_zero_quantity(manager, student, make_item):
    item = await make_item("Tea", 10, 5)

    with pytest.raises(InvalidRequestError):
        await manager.checkout(student.id, [LineRequest(item.id, 0)])


async def test_checkout_unknown_item(manager, student):
    with pytest.raises(NotFoundError):
        await manager.checkout(student.id, [LineRequest(404, 1)])


async def test_checkout_unknown_account(manager, make_item):
    item = await make_item("Tea", 10, 5)

    with pytest.raises(NotFoundError):
        await manager.checkout(999, [LineRequest(item.id, 1)])


async def test_checkout_insufficient_stock_creates_nothing(manager, student, make_item, stock_of):
    item = await make_item("Tea", 10, 2)

    with pytest.raises(InsufficientStockError):
        await manager.checkout(student.id, [LineRequest(item.id, 3)])

    assert await stock_of(item.id) == 2
    assert await manager.list_orders() == []


async def test_checkout_sums_repeated_lines_against_stock(manager, student, make_item):
    item = await make_item("Tea", 10, 3)

    with pytest.raises(InsufficientStockError):
        await manager.checkout(student.id, [LineRequest(item.id, 2), LineRequest(item.id, 2)])


async def test_checkout_degrades_when_gateway_is_down(
    manager, payment_service, student, make_item
):
    item = await make_item("Tea", 10, 3)
    payment_service.available = False

    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    assert result.degraded
    assert result.payment_handle.startswith("mock_order_")
    assert result.order.payment_reference == result.payment_handle
    assert result.order.lifecycle_state == LifecycleState.PENDING_PAYMENT


async def test_checkout_degrades_when_gateway_hangs(
    session_factory, student, make_item
):
    manager = OrderLifecycleManager(
        session_factory,
        HangingPaymentService(SIGNING_SECRET),
        make_settings(payment_gateway_timeout_seconds=0.05),
    )
    item = await make_item("Tea", 10, 3)

    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    assert result.degraded


async def test_refresh_payment_handle_after_gateway_recovers(
    manager, payment_service, pay, student, make_item
):
    item = await make_item("Tea", 10, 3)
    payment_service.available = False
    degraded = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    still_down = await manager.refresh_payment_handle(degraded.order.id)
    assert still_down.degraded
    assert still_down.payment_handle == degraded.payment_handle

    payment_service.available = True
    refreshed = await manager.refresh_payment_handle(degraded.order.id)

    assert not refreshed.degraded
    assert refreshed.payment_handle.startswith("order_mock_")
    assert refreshed.order.payment_reference == refreshed.payment_handle

    order = await manager.verify_payment(*pay(refreshed.payment_handle))
    assert order.lifecycle_state == LifecycleState.ACTIVE

    with pytest.raises(InvalidStateError):
        await manager.refresh_payment_handle(order.id)


async def test_refresh_payment_handle_requires_placeholder(manager, student, make_item):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    with pytest.raises(InvalidStateError):
        await manager.refresh_payment_handle(result.order.id)


# =============================================================================
# PAYMENT VERIFICATION
# =============================================================================

async def test_verify_rejects_bad_signature(manager, student, make_item, stock_of):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    with pytest.raises(PaymentVerificationFailedError):
        await manager.verify_payment(result.payment_handle, "pay_forged", "0" * 64)

    order = await manager.get_order(result.order.id)
    assert order.lifecycle_state == LifecycleState.PENDING_PAYMENT
    assert order.redemption_token is None
    assert await stock_of(item.id) == 3


async def test_signature_bypass_in_development(
    session_factory, payment_service, student, make_item
):
    manager = OrderLifecycleManager(
        session_factory, payment_service, make_settings(payment_signature_bypass=True)
    )
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    order = await manager.verify_payment(result.payment_handle, "pay_unsigned", "")

    assert order.lifecycle_state == LifecycleState.ACTIVE


async def test_signature_bypass_ignored_in_staging(
    session_factory, payment_service, student, make_item
):
    manager = OrderLifecycleManager(
        session_factory,
        payment_service,
        make_settings(env_mode="staging", payment_signature_bypass=True),
    )
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])

    with pytest.raises(PaymentVerificationFailedError):
        await manager.verify_payment(result.payment_handle, "pay_unsigned", "")


async def test_verify_unknown_handle(manager, payment_service):
    payment_id, signature = payment_service.complete_payment("order_mock_missing")

    with pytest.raises(NotFoundError):
        await manager.verify_payment("order_mock_missing", payment_id, signature)


async def test_verify_retry_returns_same_order(manager, pay, student, make_item, stock_of):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    confirmation = pay(result.payment_handle)

    first = await manager.verify_payment(*confirmation)
    second = await manager.verify_payment(*confirmation)

    assert second.redemption_token == first.redemption_token
    assert await stock_of(item.id) == 2


async def test_verify_cancelled_order_fails(manager, pay, student, make_item, stock_of):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    await manager.cancel(result.order.id)

    with pytest.raises(InvalidStateError):
        await manager.verify_payment(*pay(result.payment_handle))

    assert await stock_of(item.id) == 3


async def test_verify_retry_after_cancel_fails(manager, pay, student, make_item, stock_of):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    confirmation = pay(result.payment_handle)
    await manager.verify_payment(*confirmation)
    await manager.cancel(result.order.id)

    with pytest.raises(InvalidStateError, match="cancelled"):
        await manager.verify_payment(*confirmation)

    assert await stock_of(item.id) == 3


async def test_redemption_token_collision_rolls_back(
    manager, pay, student, make_item, stock_of, monkeypatch
):
    item = await make_item("Tea", 10, 5)
    first = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    second = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    monkeypatch.setattr(
        lifecycle, "issue_redemption_token",
        lambda now_ms=None: "ORD-1700000000000-0000000000000000",
    )
    await manager.verify_payment(*pay(first.payment_handle))

    with pytest.raises(IntegrityError):
        await manager.verify_payment(*pay(second.payment_handle))

    order = await manager.get_order(second.order.id)
    assert order.lifecycle_state == LifecycleState.PENDING_PAYMENT
    assert order.payment_state == PaymentState.PENDING
    assert order.redemption_token is None
    assert await stock_of(item.id) == 4


async def test_mark_payment_failed_keeps_activated_order(manager, pay, student, make_item):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    handle, payment_id, signature = pay(result.payment_handle)
    active = await manager.verify_payment(handle, payment_id, signature)

    settled = await manager._mark_payment_failed(handle, payment_id)

    assert settled.id == active.id
    assert settled.payment_state == PaymentState.COMPLETED
    assert (await manager.get_order(active.id)).payment_state == PaymentState.COMPLETED


async def test_mark_payment_failed_on_pending_order(manager, pay, student, make_item):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    handle, payment_id, _ = pay(result.payment_handle)

    assert await manager._mark_payment_failed(handle, payment_id) is None
    assert (await manager.get_order(result.order.id)).payment_state == PaymentState.FAILED


async def test_verify_fails_when_stock_ran_out(manager, pay, student, make_item, stock_of):
    item = await make_item("Tea", 10, 1)
    first = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    second = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    await manager.verify_payment(*pay(first.payment_handle))

    with pytest.raises(InsufficientStockError):
        await manager.verify_payment(*pay(second.payment_handle))

    order = await manager.get_order(second.order.id)
    assert order.lifecycle_state == LifecycleState.PENDING_PAYMENT
    assert order.payment_state == PaymentState.FAILED
    assert order.redemption_token is None
    assert await stock_of(item.id) == 0


async def test_verify_rolls_back_partial_stock(manager, pay, student, make_item, stock_of):
    plenty = await make_item("Tea", 10, 5)
    scarce = await make_item("Biscuit", 5, 1)
    first = await manager.checkout(student.id, [LineRequest(scarce.id, 1)])
    second = await manager.checkout(
        student.id, [LineRequest(plenty.id, 2), LineRequest(scarce.id, 1)]
    )
    await manager.verify_payment(*pay(first.payment_handle))

    with pytest.raises(InsufficientStockError):
        await manager.verify_payment(*pay(second.payment_handle))

    assert await stock_of(plenty.id) == 5


# =============================================================================
# SCAN, DELIVER, CANCEL
# =============================================================================

async def test_scan_twice_fails(manager, pay, student, make_item):
    item = await make_item("Tea", 10, 3)
    order = await paid_order(manager, pay, student.id, [LineRequest(item.id, 1)])

    await manager.scan(order.redemption_token)

    with pytest.raises(InvalidStateError, match="scanned"):
        await manager.scan(order.redemption_token)


async def test_scan_unknown_token(manager):
    with pytest.raises(NotFoundError):
        await manager.scan("ORD-0000000000000-0000000000000000")


async def test_deliver_before_scan_fails(manager, pay, student, make_item):
    item = await make_item("Tea", 10, 3)
    order = await paid_order(manager, pay, student.id, [LineRequest(item.id, 1)])

    with pytest.raises(InvalidStateError, match="Must scan before delivery"):
        await manager.deliver(order.id)


async def test_deliver_unknown_order(manager):
    with pytest.raises(NotFoundError):
        await manager.deliver(12345)


async def test_cancel_active_order_restores_stock(manager, pay, student, make_item, stock_of):
    item = await make_item("Tea", 10, 3)
    order = await paid_order(manager, pay, student.id, [LineRequest(item.id, 2)])
    assert await stock_of(item.id) == 1

    order = await manager.cancel(order.id)

    assert order.lifecycle_state == LifecycleState.CANCELLED
    assert order.cancelled_at is not None
    assert await stock_of(item.id) == 3

    with pytest.raises(InvalidStateError):
        await manager.scan(order.redemption_token)


async def test_cancel_pending_order_leaves_stock(manager, student, make_item, stock_of):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 2)])

    order = await manager.cancel(result.order.id)

    assert order.lifecycle_state == LifecycleState.CANCELLED
    assert await stock_of(item.id) == 3


async def test_cancel_scanned_order_fails(manager, pay, student, make_item, stock_of):
    item = await make_item("Tea", 10, 3)
    order = await paid_order(manager, pay, student.id, [LineRequest(item.id, 1)])
    await manager.scan(order.redemption_token)

    with pytest.raises(InvalidStateError, match="Cannot cancel"):
        await manager.cancel(order.id)

    assert await stock_of(item.id) == 2


async def test_cancel_twice_fails(manager, student, make_item):
    item = await make_item("Tea", 10, 3)
    result = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    await manager.cancel(result.order.id)

    with pytest.raises(InvalidStateError):
        await manager.cancel(result.order.id)


async def test_cancel_unknown_order(manager):
    with pytest.raises(NotFoundError):
        await manager.cancel(4242)


async def test_cancel_skips_deleted_menu_items(
    manager, pay, session_factory, student, make_item, stock_of
):
    from canteen.services.catalog import CatalogRepository

    kept = await make_item("Tea", 10, 3)
    dropped = await make_item("Seasonal Juice", 30, 3)
    order = await paid_order(
        manager, pay, student.id, [LineRequest(kept.id, 1), LineRequest(dropped.id, 1)]
    )
    async with session_factory() as session:
        await CatalogRepository(session).delete_item(dropped.id)

    order = await manager.cancel(order.id)

    assert order.lifecycle_state == LifecycleState.CANCELLED
    assert await stock_of(kept.id) == 3


# =============================================================================
# CONCURRENCY
# =============================================================================

async def test_concurrent_scans_redeem_once(manager, pay, student, make_item):
    item = await make_item("Tea", 10, 3)
    order = await paid_order(manager, pay, student.id, [LineRequest(item.id, 1)])

    outcomes = await asyncio.gather(
        *(manager.scan(order.redemption_token) for _ in range(5)),
        return_exceptions=True,
    )

    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 1
    assert all(isinstance(f, InvalidStateError) for f in failures)


async def test_concurrent_verifications_mint_one_token(manager, pay, student, make_item, stock_of):
    item = await make_item("Tea", 10, 5)
    result = await manager.checkout(student.id, [LineRequest(item.id, 2)])
    confirmation = pay(result.payment_handle)

    orders = await asyncio.gather(*(manager.verify_payment(*confirmation) for _ in range(4)))

    assert len({o.redemption_token for o in orders}) == 1
    assert await stock_of(item.id) == 3


async def test_concurrent_orders_cannot_oversell(manager, pay, student, other_student, make_item, stock_of):
    item = await make_item("Last Samosa", 15, 1)
    first = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    second = await manager.checkout(other_student.id, [LineRequest(item.id, 1)])

    outcomes = await asyncio.gather(
        manager.verify_payment(*pay(first.payment_handle)),
        manager.verify_payment(*pay(second.payment_handle)),
        return_exceptions=True,
    )

    activated = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, Exception)]
    assert len(activated) == 1
    assert len(rejected) == 1
    assert isinstance(rejected[0], InsufficientStockError)
    assert await stock_of(item.id) == 0

    states = {o.payment_state for o in await manager.list_orders()}
    assert states == {PaymentState.COMPLETED, PaymentState.FAILED}


# =============================================================================
# QUERIES & MAINTENANCE
# =============================================================================

async def test_list_orders_by_owner(manager, student, other_student, make_item):
    item = await make_item("Tea", 10, 10)
    await manager.checkout(student.id, [LineRequest(item.id, 1)])
    await manager.checkout(other_student.id, [LineRequest(item.id, 1)])
    latest = await manager.checkout(student.id, [LineRequest(item.id, 2)])

    mine = await manager.list_orders(owner_id=student.id)

    assert len(mine) == 2
    assert mine[0].id == latest.order.id
    assert len(await manager.list_orders()) == 3


async def test_get_order_unknown(manager):
    with pytest.raises(NotFoundError):
        await manager.get_order(1)


async def test_expire_pending_orders(manager, pay, session_factory, student, make_item, stock_of):
    item = await make_item("Tea", 10, 10)
    stale = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    fresh = await manager.checkout(student.id, [LineRequest(item.id, 1)])
    paid = await paid_order(manager, pay, student.id, [LineRequest(item.id, 1)])

    two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    async with session_factory.begin() as session:
        await session.execute(
            update(Order)
            .where(Order.id.in_([stale.order.id, paid.id]))
            .values(created_at=two_hours_ago)
        )

    expired = await manager.expire_pending_orders(timedelta(minutes=30))

    assert expired == 1
    assert (await manager.get_order(stale.order.id)).lifecycle_state == LifecycleState.CANCELLED
    assert (await manager.get_order(fresh.order.id)).lifecycle_state == LifecycleState.PENDING_PAYMENT
    assert (await manager.get_order(paid.id)).lifecycle_state == LifecycleState.ACTIVE
    assert await stock_of(item.id) == 9
