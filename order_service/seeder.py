import asyncio
from decimal import Decimal

import structlog
from sqlalchemy import func, select

from order_service.database import AsyncSessionLocal, init_db
from order_service.models import Product

logger = structlog.get_logger(__name__)

DEMO_CATALOG = [
    ("Wireless Headphones", Decimal("99.99"), 50),
    ("Smartphone", Decimal("699.99"), 30),
    ("Laptop", Decimal("1299.99"), 15),
]


async def seed_products(session) -> int:
    """Insert the demo catalog into an empty products table. Returns rows added."""
    async with session.begin():
        existing = await session.scalar(select(func.count()).select_from(Product))
        if existing:
            logger.info("seed.skipped", products=existing)
            return 0

        session.add_all(
            [Product(name=name, price=price, available_quantity=stock) for name, price, stock in DEMO_CATALOG]
        )

    logger.info("seed.done", products=len(DEMO_CATALOG))
    return len(DEMO_CATALOG)


async def main():
    await init_db()
    async with AsyncSessionLocal() as session:
        await seed_products(session)


if __name__ == "__main__":
    from order_service.logconfig import configure_logging

    configure_logging()
    asyncio.run(main())
