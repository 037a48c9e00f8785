"""
Menu Catalog Repository

Read/write access to menu items. Stock is changed only through
``adjust_stock`` (a single conditional UPDATE, so it is atomic per item and
can never drive ``stock_count`` below zero) or the admin-only ``set_stock``.

The repository works inside the caller's session and never commits on its
own from ``adjust_stock``; the order lifecycle manager owns that transaction.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from canteen.core.errors import InsufficientStockError, NotFoundError
from canteen.models import MenuCategory, MenuItem

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description", "image_url", "unit_price", "stock_count", "category")


class CatalogRepository:
    """Menu items and their live stock counts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, item_id: int) -> Optional[MenuItem]:
        result = await self.session.execute(
            select(MenuItem)
            .where(MenuItem.id == item_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, item_id: int) -> MenuItem:
        item = await self.find_by_id(item_id)
        if item is None:
            raise NotFoundError("Menu item", item_id)
        return item

    async def list_items(
        self,
        category: Optional[MenuCategory] = None,
        available_only: bool = False,
    ) -> list[MenuItem]:
        """Menu sorted by category then name."""
        query = select(MenuItem).order_by(MenuItem.category, MenuItem.name)
        if category is not None:
            query = query.where(MenuItem.category == category)
        if available_only:
            query = query.where(MenuItem.stock_count > 0)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def adjust_stock(self, item_id: int, delta: int) -> None:
        """
        Atomically add ``delta`` (may be negative) to an item's stock.

        Raises:
            NotFoundError: the item does not exist
            InsufficientStockError: the new count would be negative
        """
        result = await self.session.execute(
            update(MenuItem)
            .where(MenuItem.id == item_id, MenuItem.stock_count + delta >= 0)
            .values(stock_count=MenuItem.stock_count + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.debug(f"Stock for menu item #{item_id} adjusted by {delta:+d}")
            return

        item = await self.find_by_id(item_id)
        if item is None:
            raise NotFoundError("Menu item", item_id)
        raise InsufficientStockError(item.name, -delta, item.stock_count)

    # =========================================================================
    # ADMIN OPERATIONS
    # =========================================================================

    async def create_item(
        self,
        name: str,
        unit_price: Decimal,
        stock_count: int,
        category: MenuCategory,
        description: str = "",
        image_url: Optional[str] = None,
    ) -> MenuItem:
        item = MenuItem(
            name=name,
            unit_price=unit_price,
            stock_count=stock_count,
            category=category,
            description=description or "",
        )
        if image_url:
            item.image_url = image_url
        self.session.add(item)
        await self.session.commit()
        await self.session.refresh(item)
        logger.info(f"Menu item #{item.id} created: {item.name}")
        return item

    async def update_item(self, item_id: int, changes: dict[str, Any]) -> MenuItem:
        item = await self.get(item_id)
        for field, value in changes.items():
            if field not in EDITABLE_FIELDS:
                raise ValueError(f"Field {field!r} is not editable")
            setattr(item, field, value)
        await self.session.commit()
        await self.session.refresh(item)
        logger.info(f"Menu item #{item.id} updated: {sorted(changes)}")
        return item

    async def set_stock(self, item_id: int, stock_count: int) -> MenuItem:
        if stock_count < 0:
            raise ValueError("Stock count cannot be negative")
        return await self.update_item(item_id, {"stock_count": stock_count})

    async def delete_item(self, item_id: int) -> None:
        item = await self.get(item_id)
        await self.session.delete(item)
        await self.session.commit()
        logger.info(f"Menu item #{item_id} deleted")
