import asyncio
from decimal import Decimal
from typing import Optional

import pytest

from canteen.core.config import Settings
from canteen.database import build_engine, build_session_factory, init_db
from canteen.models import AccountRole, MenuCategory
from canteen.services.accounts import AccountRepository
from canteen.services.catalog import CatalogRepository
from canteen.services.orders import OrderLifecycleManager
from canteen.services.payment import MockPaymentService, PaymentResult

SIGNING_SECRET = "test-signing-secret"


class SwitchablePaymentService(MockPaymentService):
    """Mock gateway that can be taken offline mid-test."""

    def __init__(self, signing_secret: str):
        super().__init__(signing_secret)
        self.available = True

    async def create_payment_intent(
        self,
        amount: float,
        currency: str = "inr",
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        if not self.available:
            raise ConnectionError("gateway unreachable")
        return await super().create_payment_intent(amount, currency, metadata)


class HangingPaymentService(MockPaymentService):
    """Mock gateway that never answers within the checkout timeout."""

    async def create_payment_intent(self, amount, currency="inr", metadata=None):
        await asyncio.sleep(10)
        return await super().create_payment_intent(amount, currency, metadata)


def make_settings(**overrides) -> Settings:
    values = {
        "env_mode": "development",
        "payment_signing_secret": SIGNING_SECRET,
        "payment_gateway_timeout_seconds": 1.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'canteen.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def payment_service():
    return SwitchablePaymentService(SIGNING_SECRET)


@pytest.fixture
def manager(session_factory, payment_service, settings):
    return OrderLifecycleManager(session_factory, payment_service, settings)


@pytest.fixture
async def student(session_factory):
    async with session_factory() as session:
        return await AccountRepository(session).create_account("Asha Rao", "asha@example.edu")


@pytest.fixture
async def other_student(session_factory):
    async with session_factory() as session:
        return await AccountRepository(session).create_account("Ravi Iyer", "ravi@example.edu")


@pytest.fixture
async def admin(session_factory):
    async with session_factory() as session:
        return await AccountRepository(session).create_account(
            "Counter Staff", "counter@example.edu", AccountRole.ADMIN
        )


@pytest.fixture
def make_item(session_factory):
    async def _make(name, price, stock, category=MenuCategory.LUNCH):
        async with session_factory() as session:
            return await CatalogRepository(session).create_item(
                name=name,
                unit_price=Decimal(str(price)),
                stock_count=stock,
                category=category,
            )
    return _make


@pytest.fixture
def stock_of(session_factory):
    async def _stock(item_id):
        async with session_factory() as session:
            item = await CatalogRepository(session).find_by_id(item_id)
            return item.stock_count
    return _stock


@pytest.fixture
def pay(payment_service):
    """Complete payment for a checkout the way the gateway would."""
    def _pay(handle):
        payment_id, signature = payment_service.complete_payment(handle)
        return handle, payment_id, signature
    return _pay
