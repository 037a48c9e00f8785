import pytest

from canteen.core.config import get_settings
from canteen.services.payment import (
    MockPaymentService,
    get_payment_service,
    reset_payment_service,
    to_minor_units,
)

from tests.conftest import SIGNING_SECRET


@pytest.fixture
def gateway():
    return MockPaymentService(SIGNING_SECRET)


@pytest.fixture
def fresh_factory(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    get_settings.cache_clear()
    reset_payment_service()
    yield monkeypatch
    get_settings.cache_clear()
    reset_payment_service()


async def test_create_payment_intent_returns_handle(gateway):
    result = await gateway.create_payment_intent(40.0, currency="inr")

    assert result.success
    assert result.payment_intent_id.startswith("order_mock_")
    assert result.amount_minor == 4000
    assert result.currency == "inr"


async def test_create_payment_intent_rejects_non_positive_amount(gateway):
    result = await gateway.create_payment_intent(0)

    assert not result.success
    assert result.error_code == "invalid_amount"


async def test_failure_rate_one_always_refuses():
    gateway = MockPaymentService(SIGNING_SECRET, failure_rate=1.0)

    result = await gateway.create_payment_intent(10.0)

    assert not result.success
    assert result.payment_intent_id is None
    assert result.error_code in {code for code, _ in MockPaymentService.ERROR_REASONS}


def test_completed_payment_carries_valid_signature(gateway):
    payment_id, signature = gateway.complete_payment("order_mock_abc")

    assert gateway.verify_payment_signature("order_mock_abc", payment_id, signature)


def test_signature_is_bound_to_handle_and_payment(gateway):
    payment_id, signature = gateway.complete_payment("order_mock_abc")

    assert not gateway.verify_payment_signature("order_mock_xyz", payment_id, signature)
    assert not gateway.verify_payment_signature("order_mock_abc", "pay_other", signature)
    assert not gateway.verify_payment_signature("order_mock_abc", payment_id, signature[:-1] + "0")
    assert not gateway.verify_payment_signature("order_mock_abc", payment_id, "")


def test_signature_depends_on_secret(gateway):
    other = MockPaymentService("another-secret")
    payment_id, signature = other.complete_payment("order_mock_abc")

    assert not gateway.verify_payment_signature("order_mock_abc", payment_id, signature)


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        MockPaymentService("")


def test_to_minor_units_rounds_to_nearest_unit():
    assert to_minor_units(29.99) == 2999
    assert to_minor_units(40) == 4000


def test_factory_uses_mock_in_development(fresh_factory):
    fresh_factory.setenv("ENV_MODE", "development")

    service = get_payment_service()

    assert service.provider_name == "mock"
    assert get_payment_service() is service


def test_factory_requires_stripe_key_outside_development(fresh_factory):
    fresh_factory.setenv("ENV_MODE", "staging")

    with pytest.raises(ValueError, match="STRIPE_SECRET_KEY"):
        get_payment_service()
