"""
SQLAlchemy Database Models

Menu items, accounts and orders for the canteen:
- Menu items carry a live stock count that never goes negative
- Orders snapshot item names and prices at checkout
- Orders move through a one-directional lifecycle guarded by ``version``
"""

import enum
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from canteen.database import Base


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class MenuCategory(str, enum.Enum):
    """Menu sections."""
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    SNACKS = "snacks"
    BEVERAGES = "beverages"
    DINNER = "dinner"
    DESSERTS = "desserts"


class AccountRole(str, enum.Enum):
    """Who is calling: students buy, admins run the counter."""
    STUDENT = "student"
    ADMIN = "admin"


class LifecycleState(str, enum.Enum):
    """Order fulfilment workflow."""
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    SCANNED = "scanned"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentState(str, enum.Enum):
    """Payment outcome, independent of fulfilment."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class MenuItem(Base):
    """
    A purchasable product with a live stock count.

    Stock is only changed through single-statement adjustments
    (see ``CatalogRepository.adjust_stock``).
    """
    __tablename__ = "menu_items"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("stock_count >= 0", name="ck_menu_items_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    image_url = Column(
        String(500),
        nullable=False,
        default="https://via.placeholder.com/300x200?text=Food+Item",
    )
    unit_price = Column(Numeric(10, 2), nullable=False)
    stock_count = Column(Integer, nullable=False, default=0)
    category = Column(
        Enum(MenuCategory, name="menu_category", values_callable=_enum_values),
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_available(self) -> bool:
        return self.stock_count > 0

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name} - stock={self.stock_count}>"


class Account(Base):
    """A student or admin; only role and identity are read here."""
    __tablename__ = "accounts"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(
        Enum(AccountRole, name="account_role", values_callable=_enum_values),
        nullable=False,
        default=AccountRole.STUDENT,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    def __repr__(self):
        return f"<Account #{self.id} - {self.email} - {self.role.value}>"


class Order(Base):
    """
    A checked-out cart and its path from payment to hand-over.

    Tracks the complete lifecycle from checkout to delivery or cancellation.
    """
    __tablename__ = "orders"
    __mapper_args__ = {"eager_defaults": True}

    # Primary Key
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    total_amount = Column(Numeric(10, 2), nullable=False)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_reference = Column(String(100), nullable=False, unique=True, index=True)
    gateway_payment_id = Column(String(100), nullable=True)
    payment_state = Column(
        Enum(PaymentState, name="payment_state", values_callable=_enum_values),
        default=PaymentState.PENDING,
        nullable=False,
    )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    lifecycle_state = Column(
        Enum(LifecycleState, name="lifecycle_state", values_callable=_enum_values),
        default=LifecycleState.PENDING_PAYMENT,
        nullable=False,
        index=True,
    )
    redemption_token = Column(String(64), nullable=True, unique=True, index=True)
    version = Column(Integer, nullable=False, default=1)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    scanned_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    line_items = relationship(
        "OrderLineItem",
        order_by="OrderLineItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Order #{self.id} - owner={self.owner_id} - {self.lifecycle_state.value}>"


class OrderLineItem(Base):
    """
    One line of an order.

    ``catalog_item_id`` is a plain reference so that deleting a menu item
    never rewrites order history.
    """
    __tablename__ = "order_line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    catalog_item_id = Column(Integer, nullable=False)
    display_name = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_line_items_quantity_positive"),
    )

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def __repr__(self):
        return f"<OrderLineItem {self.quantity} x {self.display_name}>"
