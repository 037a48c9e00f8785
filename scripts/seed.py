"""
Seed Script

Creates the schema, one counter admin, a handful of students and a demo menu.
Run from project root: python scripts/seed.py

Safe to re-run: nothing is inserted if the menu already has items.
"""

import asyncio
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from canteen.core.config import get_settings, setup_logging  # noqa: E402
from canteen.database import get_engine, get_session_factory, init_db  # noqa: E402
from canteen.models import AccountRole, MenuCategory  # noqa: E402
from canteen.services.accounts import AccountRepository  # noqa: E402
from canteen.services.catalog import CatalogRepository  # noqa: E402

STUDENTS = [
    ("Asha Rao", "asha@example.edu"),
    ("Ravi Iyer", "ravi@example.edu"),
    ("Meera Nair", "meera@example.edu"),
    ("Kabir Shah", "kabir@example.edu"),
]

MENU = [
    ("Masala Dosa", "45.00", 40, MenuCategory.BREAKFAST),
    ("Idli Vada", "35.00", 40, MenuCategory.BREAKFAST),
    ("Veg Thali", "80.00", 25, MenuCategory.LUNCH),
    ("Paneer Wrap", "60.00", 20, MenuCategory.LUNCH),
    ("Samosa", "15.00", 60, MenuCategory.SNACKS),
    ("Filter Coffee", "20.00", 100, MenuCategory.BEVERAGES),
    ("Masala Chai", "12.00", 100, MenuCategory.BEVERAGES),
    ("Gulab Jamun", "25.00", 5, MenuCategory.DESSERTS),
]


async def seed() -> None:
    settings = get_settings()
    print(f"Seeding {settings.database_url.split('@')[-1]}")

    await init_db()
    try:
        await _populate(get_session_factory())
    finally:
        await get_engine().dispose()
    print("Done")


async def _populate(session_factory) -> None:
    async with session_factory() as session:
        catalog = CatalogRepository(session)
        if await catalog.list_items():
            print("Menu already present, nothing to do")
            return

        accounts = AccountRepository(session)
        admin = await accounts.create_account("Counter Staff", "counter@example.edu", AccountRole.ADMIN)
        print(f"   Admin   #{admin.id}: {admin.email}")
        for name, email in STUDENTS:
            student = await accounts.create_account(name, email)
            print(f"   Student #{student.id}: {student.email}")

        for name, price, stock, category in MENU:
            item = await catalog.create_item(
                name=name,
                unit_price=Decimal(price),
                stock_count=stock,
                category=category,
            )
            print(f"   Item    #{item.id}: {item.name} ({item.stock_count} in stock)")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed())
