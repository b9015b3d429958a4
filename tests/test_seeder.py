import pytest
from sqlalchemy import select

from order_service.models import Product
from order_service.seeder import DEMO_CATALOG, seed_products


@pytest.mark.asyncio
async def test_seed_fills_an_empty_catalog_once(session_factory):
    async with session_factory() as session:
        assert await seed_products(session) == len(DEMO_CATALOG)

    async with session_factory() as session:
        assert await seed_products(session) == 0

    async with session_factory() as session:
        rows = (await session.execute(select(Product).order_by(Product.id))).scalars().all()

    assert [(p.name, p.price, p.available_quantity) for p in rows] == DEMO_CATALOG
